"""Allow `python -m gl_bulk`."""

from __future__ import annotations

from gl_bulk.cli import run

run()

"""Module entry point: python -m timeline_geotag ..."""

from __future__ import annotations

from timeline_geotag.cli import main


if __name__ == "__main__":
    raise SystemExit(main())

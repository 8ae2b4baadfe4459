"""Module entry point: python -m route_replay ..."""

from __future__ import annotations

from route_replay.cli import main


if __name__ == "__main__":
    raise SystemExit(main())

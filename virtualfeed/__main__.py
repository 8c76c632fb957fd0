"""Module executed when running ``python -m virtualfeed``."""

from __future__ import annotations

from .cli import main

if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()

"""Allow ``python -m packleech``."""

from __future__ import annotations

from packleech.cli.main import main

if __name__ == "__main__":
    main()

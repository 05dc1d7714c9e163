from __future__ import annotations

from seedloop.cli import main


if __name__ == "__main__":
    main()

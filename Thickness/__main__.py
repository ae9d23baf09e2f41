from __future__ import annotations

from Thickness.cli import main


if __name__ == "__main__":
    main()

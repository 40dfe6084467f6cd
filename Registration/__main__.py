from __future__ import annotations

from Registration.cli import main


if __name__ == "__main__":
    main()

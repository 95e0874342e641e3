"""Allow ``python -m bwhero``."""

from bwhero.cli.main import main

if __name__ == "__main__":
    main()

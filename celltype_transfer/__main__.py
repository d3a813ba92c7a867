"""Allow ``python -m celltype_transfer``."""

from .cli.main import main

if __name__ == "__main__":
    main()

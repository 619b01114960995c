"""Entry point for ``python -m shcsync``."""

from shcsync.cli.commands import main

if __name__ == "__main__":
    main()

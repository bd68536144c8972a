"""Main entry point for running topodrive as a module."""

import sys

if __name__ == "__main__":
    from topodrive.cli.app import main
    sys.exit(main())

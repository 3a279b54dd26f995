"""
Entry point for running dbretire as a module.

Usage:
    python -m dbretire plan table:orders_legacy
    python -m dbretire status --detailed

This is equivalent to the ``dbretire`` console script.
"""

import sys

from dbretire.cli.deprecation_cli import main

if __name__ == "__main__":
    sys.exit(main())

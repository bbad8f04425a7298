"""
Entry point for running the reporting sync as a module.

Usage:
    python -m services.reporting_sync [args]
"""

import sys

from .main import cli_main

if __name__ == "__main__":
    sys.exit(cli_main())

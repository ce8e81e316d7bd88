#!/usr/bin/env python3
"""
Oche tournament desk launcher.

Runs any of the desk services, see `python app.py --help`.
"""

import sys

from oche.cli import main


if __name__ == "__main__":
    sys.exit(main())

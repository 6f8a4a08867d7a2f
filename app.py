#!/usr/bin/env python3
"""
fleetrun launcher for running from a source checkout.

Usage:
    python app.py PROFILE [--profiles-dir DIR] [--param NAME=VALUE] ...
"""

import sys

from fleetrun.app import main


if __name__ == '__main__':
    sys.exit(main())

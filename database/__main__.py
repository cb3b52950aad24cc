#!/usr/bin/env python3
"""
Comfy Inventory Database Package Entry Point
============================================

Default action: Initialize database
Usage: python -m database [args...]

This runs the database initialization script by default.
Scans, downloads and tasks live in the inventory CLI:
- python -m inventory --help
"""

import sys
from .init_database import main

if __name__ == '__main__':
    sys.exit(main())

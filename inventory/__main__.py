#!/usr/bin/env python3
"""
Comfy Inventory Package Entry Point
===================================

Usage: python -m inventory [args...]
"""

import sys
from .cli import main

if __name__ == '__main__':
    sys.exit(main())

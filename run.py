#!/usr/bin/env python3
"""Backup runner"""
import sys
from backupkit.cli import main

if __name__ == '__main__':
    sys.exit(main())

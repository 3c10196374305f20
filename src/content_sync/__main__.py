#!/usr/bin/env python3
"""
Content Sync - Main entry point for python -m content_sync
"""

from content_sync.cli import main


if __name__ == "__main__":
    main()

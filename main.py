#!/usr/bin/env python3
"""
Entry point for the KoBo images sync tool.
"""

from kobosync.cli import main


if __name__ == "__main__":
    main()

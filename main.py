#!/usr/bin/env python3
"""
Command-line entry point for the subscription manager.
"""

from src.cli.main import main


if __name__ == '__main__':
    main()

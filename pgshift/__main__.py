"""
pgshift CLI entry point.

Usage:
    python -m pgshift [COMMAND] [OPTIONS]
"""
from .cli import main

if __name__ == "__main__":
    main()

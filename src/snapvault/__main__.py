"""
Entry point for running snapvault as a module.

Usage:
    python -m snapvault [command] [options]
"""

from snapvault.cli import main

if __name__ == "__main__":
    main()

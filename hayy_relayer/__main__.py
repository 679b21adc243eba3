"""
Entry point for running the relayer as a module.

Usage:
    python -m hayy_relayer
"""

from hayy_relayer.cli import main

if __name__ == "__main__":
    main()

"""
Entry point for running resticgroups as a module.

Usage:
    python -m resticgroups [group] [options]

This allows resticgroups to be executed directly as a Python module,
which is useful from cron entries that pin a specific interpreter.
"""

from resticgroups.cli import main

if __name__ == "__main__":
    main()

"""
Entry point for running storyloop as a module.

Allows running as: python -m storyloop
"""

from storyloop.cli import cli_main

if __name__ == "__main__":
    cli_main()

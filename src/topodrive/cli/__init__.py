"""Command-line interface for topodrive."""

from topodrive.cli.app import main

__all__ = ['main']

"""govtally command-line interface."""

from .governance import cli, main

__all__ = ["cli", "main"]

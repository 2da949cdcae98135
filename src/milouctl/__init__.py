"""milouctl package bootstrap.

This module exposes lightweight metadata that other modules (and packaging
machinery) rely upon.
"""
from __future__ import annotations

__all__ = ["__version__"]

# Read by hatch as the distribution version.
__version__ = "0.4.0"

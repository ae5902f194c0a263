"""
Install handler framework for gman.
"""

from .registry import InstallerRegistry, get_handler_class

__all__ = ["InstallerRegistry", "get_handler_class"]

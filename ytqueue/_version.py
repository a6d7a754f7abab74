"""
Defines the application's version string.

This is the single source of truth for the application's version number.
It is used in the startup banner, the versions endpoint, and for packaging.
"""

__version__ = "1.0.0"

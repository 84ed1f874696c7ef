"""Local encrypted mirror of source trees with content search."""

__version__ = "0.1.0"

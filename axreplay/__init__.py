"""Accessibility-tree browser automation and action recording over CDP."""

__version__ = "0.1.0"

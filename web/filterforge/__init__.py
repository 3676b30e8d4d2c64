"""Filter-list compiler and dynamic rule-set manager."""

__version__ = "0.1.0"

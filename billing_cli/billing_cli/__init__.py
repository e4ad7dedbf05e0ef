"""Operator command-line interface for add-on billing."""

__version__ = "0.4.0"

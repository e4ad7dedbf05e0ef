"""Add-on billing engine: bundle catalog, domain models, and state store."""

__version__ = "0.4.0"

"""Directory reconciliation: drive identity providers toward a canonical roster."""

__version__ = "0.1.0"

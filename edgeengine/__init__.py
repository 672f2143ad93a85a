"""Application reconciliation, activation and event forwarding for edge nodes."""

__version__ = "0.1.0"

__all__ = [
    "models",
    "conflicts",
    "store",
    "clean",
    "engine",
    "downside",
    "eventx",
    "activate",
    "activate_server",
]
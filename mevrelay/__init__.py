"""Housekeeping service, status website and page helpers for an MEV-Boost relay."""

__version__ = "0.1.0"
__all__ = ["html", "housekeeper", "website"]
"""Competitor-following price automation for P2P ads."""

__all__ = ["__version__"]

__version__ = "0.1.0"

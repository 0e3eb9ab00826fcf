"""Verax: evidence-backed detection of silent failures in web interactions."""

__version__ = "0.4.0"

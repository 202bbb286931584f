"""Opportunity discovery engine for retail pharmacy dispensing data."""

__version__ = "0.4.0"

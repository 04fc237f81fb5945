"""Auction lifecycle and settlement server for tokenized assets."""

__version__ = "1.0.0"

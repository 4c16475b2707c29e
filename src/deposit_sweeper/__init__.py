"""Deposit watcher and gas-sponsored sweep engine."""

__version__ = "0.1.0"

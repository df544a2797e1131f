"""Prometheus metrics collector for Algorand, Avalanche, Solana and Ethereum nodes."""

__version__ = '0.1.0'

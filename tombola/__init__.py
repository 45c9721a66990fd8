"""Verifiable on-chain prize draw engine."""

__version__ = "0.1.0"

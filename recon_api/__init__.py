"""Mercado Pago notification reconciliation service."""

__version__ = "0.3.1"

"""Mercado Pago notification reconciliation."""

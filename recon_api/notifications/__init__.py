"""Outbound customer notifications (email)."""

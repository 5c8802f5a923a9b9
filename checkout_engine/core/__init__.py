"""Reservation, ordering and reconciliation logic."""

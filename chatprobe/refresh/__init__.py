"""Scheduled, lock-protected credential refresh."""

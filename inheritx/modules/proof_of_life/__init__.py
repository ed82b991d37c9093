"""Proof-of-life inactivity monitoring."""

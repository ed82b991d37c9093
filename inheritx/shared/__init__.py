"""Shared models and services."""

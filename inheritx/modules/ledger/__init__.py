"""Ledger/escrow gateway clients."""

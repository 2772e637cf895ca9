"""Reconciliation, idempotent persistence and the sync engine."""

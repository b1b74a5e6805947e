"""Snapshot reconciliation."""

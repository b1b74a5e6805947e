"""Realtime push event ingestion."""

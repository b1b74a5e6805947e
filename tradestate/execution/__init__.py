"""Optimistic mutations and SL/TP calculation."""

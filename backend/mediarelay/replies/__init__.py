"""Debounced acknowledgment replies."""

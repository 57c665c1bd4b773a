"""Webhook ingestion: router, per-event pipeline and local staging."""

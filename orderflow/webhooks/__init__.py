"""Inbound webhooks: verification, normalization, idempotency and routes."""

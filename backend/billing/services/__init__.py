"""Billing reconciliation services: webhook processing, idempotency, rate limiting and notifications."""

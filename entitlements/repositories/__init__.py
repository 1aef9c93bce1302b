"""Persistence layer for subscriptions, licenses and rate limits."""

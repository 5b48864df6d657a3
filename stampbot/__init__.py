"""Consent, unsubscribe and rate-limit verification for outbound messaging."""

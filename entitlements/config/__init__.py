"""Settings for the entitlement service."""

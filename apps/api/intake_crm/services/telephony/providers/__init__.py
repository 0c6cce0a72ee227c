"""Provider adapters mapping vendor webhooks to normalized events."""

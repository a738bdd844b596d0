"""Remote transport, auth and the per-entity sync services."""

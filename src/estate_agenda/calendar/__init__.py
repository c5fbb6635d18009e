"""Calendar events: local store, idempotency and Google Calendar sync."""

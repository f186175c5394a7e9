"""Account credential storage."""

"""HTTP client for the remote file service."""

"""Cache-consistent orchestration of remote operations."""

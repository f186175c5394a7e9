"""Persistent index (SQLite via SQLAlchemy)."""

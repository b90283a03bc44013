"""SQLite-backed settings and prompt-history storage."""

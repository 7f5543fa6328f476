"""SQLite persistence for the delivery queue."""

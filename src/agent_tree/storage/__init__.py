"""SQLite persistence layer: engine policy, tables and migrations."""

"""SQLite persistence layer: engine policy, ORM tables, migrations."""

"""SQLite storage: ORM tables, engine policy and schema migrations."""

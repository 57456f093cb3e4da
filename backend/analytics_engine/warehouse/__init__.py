"""Per-tenant warehouse schema management and query execution."""

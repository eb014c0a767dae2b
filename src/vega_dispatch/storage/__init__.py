"""Versioned, watchable object store on SQLite."""

"""Wire formats, persisted records and the Result type."""

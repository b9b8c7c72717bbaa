"""Storage layer: record store, tag repository and the FTS5 mirror."""

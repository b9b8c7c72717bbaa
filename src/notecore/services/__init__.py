"""Query parsing and search services."""

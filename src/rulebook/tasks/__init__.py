"""File-backed task records, dependency graph and lifecycle rules."""

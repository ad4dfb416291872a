"""Local agent stand-ins used by integration tests and smoke runs."""

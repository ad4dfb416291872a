"""Task lifecycle manager and orchestrator for external CLI coding agents."""

__version__ = "0.4.0"

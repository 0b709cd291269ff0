"""query-stream: client-side streaming session manager for AI queries."""

__version__ = "0.1.0"

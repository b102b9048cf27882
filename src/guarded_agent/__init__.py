"""Permission-gated agentic execution core."""

__version__ = "0.1.0"

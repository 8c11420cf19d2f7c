"""chatrelay — streaming chat relay with markdown-safe chunking and inline tool calls."""

__version__ = "0.1.0"

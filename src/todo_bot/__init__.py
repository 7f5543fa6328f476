"""Chat-to-spreadsheet TODO bot: message batching and durable delivery queue."""

__version__ = "0.1.0"

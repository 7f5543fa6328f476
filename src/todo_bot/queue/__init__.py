"""Message batching and durable delivery queue."""

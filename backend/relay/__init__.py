"""Real-time chat relay with durable message history."""

__version__ = "0.1.0"

"""Real-time chat room synchronization engine."""

__version__ = "0.1.0"

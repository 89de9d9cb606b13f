"""Multi-provider streaming chat server and conversation engine."""

__version__ = "0.1.0"

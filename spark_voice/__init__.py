"""Spark Voice relay: browser voice/chat sessions kept in sync with a shared agent transcript."""

__version__ = "0.1.0"

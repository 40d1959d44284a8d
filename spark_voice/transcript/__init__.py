"""Shared transcript access: reading, appending and change notification."""

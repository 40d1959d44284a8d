"""Session synchronization and resilient request delivery."""

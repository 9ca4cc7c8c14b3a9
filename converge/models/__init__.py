"""Data models — declared state, actual state, operations and results."""

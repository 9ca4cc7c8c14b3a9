"""Core engine: state diffing and the transaction lifecycle."""

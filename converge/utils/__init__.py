"""Small helpers shared by the engine, backends and CLI."""

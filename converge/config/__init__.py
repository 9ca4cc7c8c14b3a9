"""YAML configuration: runtime settings and the declared state."""

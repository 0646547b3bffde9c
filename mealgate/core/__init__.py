"""Core configuration, persistence and plan catalog."""

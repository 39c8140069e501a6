"""Wire-format models for external services."""

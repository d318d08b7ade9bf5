"""Channel configuration."""

"""msgrelay application package."""

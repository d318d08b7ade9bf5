"""msgrelay - Messages-format reverse proxy for multiple LLM providers."""

__version__ = "0.1.0"

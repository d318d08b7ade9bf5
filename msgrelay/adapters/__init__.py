"""Upstream adapters."""

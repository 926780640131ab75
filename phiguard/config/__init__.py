"""Versioned engine configuration."""

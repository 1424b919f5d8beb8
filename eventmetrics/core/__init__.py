"""Core infrastructure — database, logging, settings."""

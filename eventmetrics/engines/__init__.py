"""Engines — statistics processing and job dispatch."""

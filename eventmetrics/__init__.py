"""EventMetrics — statistics job pipeline for Wikimedia edit-a-thon events."""

__version__ = "0.1.0"

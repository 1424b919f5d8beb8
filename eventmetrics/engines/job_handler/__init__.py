"""Job handler — dispatch queued statistics jobs within the replica quota."""

from eventmetrics.engines.job_handler.runner import JobHandler

__all__ = ["JobHandler"]

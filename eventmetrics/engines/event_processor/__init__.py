"""Event processor — compute and store the statistics of one event."""

from eventmetrics.engines.event_processor.models import ProcessResult, RetentionResult, StatValue
from eventmetrics.engines.event_processor.processor import EventProcessor
from eventmetrics.engines.event_processor.retention import count_retained

__all__ = [
    "EventProcessor",
    "ProcessResult",
    "RetentionResult",
    "StatValue",
    "count_retained",
]

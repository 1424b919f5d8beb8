"""Read-only access to the Wikimedia replica databases."""


class ReplicaError(Exception):
    """Base replica exception."""


class QueryTimeoutError(ReplicaError):
    """The query ran past ``max_statement_time`` (MariaDB error 1969)."""


class ReplicaOverloadedError(ReplicaError):
    """Too many connections for our replica user (MariaDB error 1226)."""

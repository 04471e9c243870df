"""Errors raised at the gateway and store boundaries."""


class MnemosError(Exception):
    """Base class for graph memory errors."""


class EmbeddingError(MnemosError):
    """The embedding provider failed or timed out."""


class CompletionError(MnemosError):
    """The completion provider failed or timed out."""


class StoreUnavailable(MnemosError):
    """The backing store is unreachable or rejected the operation."""

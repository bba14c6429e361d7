"""Error taxonomy shared by the metrics sources, the store and the cache."""

from __future__ import annotations


class CacheEngineError(Exception):
    """Base class for all engine errors."""


class MetricsSourceError(CacheEngineError):
    """An upstream advertising platform call failed."""

    retryable = False

    def __init__(self, message: str, *, platform: str | None = None, account_id: str | None = None) -> None:
        self.platform = platform
        self.account_id = account_id
        super().__init__(message)


class UpstreamUnavailable(MetricsSourceError):
    """Network failure or server error. Retry later and serve stale data meanwhile."""

    retryable = True


class UpstreamRateLimited(UpstreamUnavailable):
    pass


class UpstreamAuthInvalid(MetricsSourceError):
    """Credentials rejected. Needs operator action, never retried automatically."""


class UpstreamNotFound(MetricsSourceError):
    pass


class PersistenceError(CacheEngineError):
    """The period store could not complete an operation."""


class NotYetCollected(CacheEngineError):
    """No data has been stored for the requested period yet."""


class UnknownAccountError(CacheEngineError, LookupError):
    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Unknown account {account_id}")

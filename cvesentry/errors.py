"""Error taxonomy for the ingestion pipeline.

Every error the pipeline reasons about derives from ``PipelineError`` and
carries a short ``kind`` string used for the per-kind counters in the
cycle summary.

Hierarchy::

    PipelineError
    ├── FeedError
    │   ├── FeedUnavailable        (transient, retried with backoff)
    │   ├── FeedRateLimited        (transient, retried after delay)
    │   └── FeedMalformed          (permanent for one page)
    ├── RecordInvalid              (permanent for one record)
    ├── RecordRetracted            (logged and skipped)
    ├── StoreError
    │   ├── StoreConflict          (transient, retried immediately)
    │   └── StoreUnavailable       (fatal for the cycle)
    ├── SearchSourceError
    │   ├── SearchSourceUnavailable
    │   └── SearchSourceRateLimited
    ├── DeliveryFailed             (logged, never retried)
    └── CycleAborted
"""

from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    kind = "pipeline_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        self.details = details
        super().__init__(message)


# ─── Feed ────────────────────────────────────────────────────────────────────


class FeedError(PipelineError):
    kind = "feed_error"


class FeedUnavailable(FeedError):
    """Network failure or 5xx response from the feed."""

    kind = "feed_unavailable"
    retryable = True

    def __init__(self, message: str, status_code: int | None = None, **details: Any):
        self.status_code = status_code
        super().__init__(message, status_code=status_code, **details)


class FeedRateLimited(FeedError):
    """The feed asked us to slow down (429 or NVD-style 403).

    Attributes:
        retry_after: Seconds the server asked us to wait, if it said so.
    """

    kind = "feed_rate_limited"
    retryable = True

    def __init__(self, message: str, retry_after: float | None = None, **details: Any):
        self.retry_after = retry_after
        super().__init__(message, retry_after=retry_after, **details)


class FeedMalformed(FeedError):
    """A page failed schema validation.

    Attributes:
        cursor: Cursor of the page that could not be parsed.
        page_size: Number of records the page was expected to hold, so the
            caller can step over it.
    """

    kind = "feed_malformed"

    def __init__(self, message: str, cursor: int = 0, page_size: int = 0, **details: Any):
        self.cursor = cursor
        self.page_size = page_size
        super().__init__(message, cursor=cursor, page_size=page_size, **details)


# ─── Records ─────────────────────────────────────────────────────────────────


class RecordInvalid(PipelineError):
    kind = "record_invalid"

    def __init__(self, message: str, cve_id: str | None = None, **details: Any):
        self.cve_id = cve_id
        super().__init__(message, cve_id=cve_id, **details)


class RecordRetracted(PipelineError):
    """The feed marks a record as rejected/withdrawn. We never delete."""

    kind = "record_retracted"

    def __init__(self, message: str, cve_id: str | None = None, **details: Any):
        self.cve_id = cve_id
        super().__init__(message, cve_id=cve_id, **details)


# ─── Store ───────────────────────────────────────────────────────────────────


class StoreError(PipelineError):
    kind = "store_error"


class StoreConflict(StoreError):
    """Concurrent writer contention on the same unique key."""

    kind = "store_conflict"
    retryable = True


class StoreUnavailable(StoreError):
    kind = "store_unavailable"


# ─── Search source ───────────────────────────────────────────────────────────


class SearchSourceError(PipelineError):
    kind = "search_error"


class SearchSourceUnavailable(SearchSourceError):
    kind = "search_unavailable"
    retryable = True


class SearchSourceRateLimited(SearchSourceError):
    kind = "search_rate_limited"
    retryable = True

    def __init__(self, message: str, reset_at: float | None = None, **details: Any):
        self.reset_at = reset_at
        super().__init__(message, reset_at=reset_at, **details)


# ─── Delivery ────────────────────────────────────────────────────────────────


class DeliveryFailed(PipelineError):
    """A provider could not hand a payload to the messaging collaborator."""

    kind = "delivery_failed"

    def __init__(self, message: str, provider: str = "", **details: Any):
        self.provider = provider
        super().__init__(message, provider=provider, **details)


# ─── Cycle ───────────────────────────────────────────────────────────────────


class CycleAborted(PipelineError):
    """A stage hit a fatal error; the cycle stops and the watermark stays put."""

    kind = "cycle_aborted"

    def __init__(self, message: str, stage: str, cause: BaseException | None = None, **details: Any):
        self.stage = stage
        self.cause = cause
        super().__init__(message, stage=stage, **details)

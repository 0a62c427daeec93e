"""
Exception types for topicfeed.
"""


class RemoteError(Exception):
    """Base class for failures of the remote content source."""


class RemoteTimeoutError(RemoteError):
    """A remote call timed out, was aborted or could not connect. Transient."""


class RemoteQueryError(RemoteError):
    """The remote source answered with an error."""


class TopicNotFoundError(RemoteError):
    """No public topic exists for the requested slug."""


class FeedUnavailableError(Exception):
    """
    Every fallback strategy failed for a load.

    The original remote failure is chained as ``__cause__``. Callers present
    this as a retryable error state (see ``TopicFeed.retry_load``).
    """

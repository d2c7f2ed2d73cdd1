"""Error types shared by the cache core and the upstream clients."""


class UpstreamFetchError(Exception):
    """An upstream system (Jira, GitHub) failed or timed out."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class BatchFillError(UpstreamFetchError):
    """One of the fetches inside a batch fill failed, aborting the batch."""

    def __init__(self, key: str, cause: Exception):
        super().__init__(f"Failed to fetch {key}: {cause}")
        self.key = key
        self.cause = cause


class CacheStoreError(Exception):
    """The cache store could not be reached or rejected an operation."""

    def __init__(self, operation: str, cause: Exception = None):
        message = f"Cache store operation failed: {operation}"
        if cause is not None:
            message = f"{message} ({cause})"
        super().__init__(message)
        self.operation = operation
        self.cause = cause

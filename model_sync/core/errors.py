"""
Error taxonomy for transfer and QC operations
"""

from typing import Optional


class ModelSyncError(Exception):
    """Base class for all model sync errors"""


class NotFoundError(ModelSyncError):
    """A model, tag, pattern or file does not exist"""


class SourceNotFound(NotFoundError):
    pass


class PatternMatchedNothing(NotFoundError):
    def __init__(self, pattern: str, source: str = ""):
        self.pattern = pattern
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(f"Pattern '{pattern}' matched no tags{where}")


class DestinationAlreadyExists(ModelSyncError):
    pass


class SourceNotEligibleForRemoteTransfer(ModelSyncError):
    pass


class NetworkError(ModelSyncError):
    """Transient transport or server failure; callers may retry"""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status >= 500 or self.status == 429


class RequestTimeout(NetworkError):
    pass


class TimeoutDeclined(RequestTimeout):
    """Retries timed out and the user chose not to extend the timeout"""


class VerificationFailed(ModelSyncError):
    pass


class AbortRun(ModelSyncError):
    """The QC run cannot continue without invalidating the result document"""


class StreamError(ModelSyncError):
    """Error event inside a streamed server response; repeating the request repeats it"""


class RunCancelled(ModelSyncError):
    """Raised when the user cancels; never treated as a transient failure"""


class JudgeResponseError(ModelSyncError):
    def __init__(self, message: str, raw_response: Optional[str] = None):
        self.raw_response = raw_response
        super().__init__(message)


class ProviderConfigError(ModelSyncError):
    pass

"""
Exception hierarchy of the backup pipeline.
"""
from typing import Optional


class BackupError(Exception):
    """
    Base class for all errors raised by the backup pipeline.
    """


class TranscodeError(BackupError):
    """
    The BSON input could not be converted to JSONL.
    """


class CorruptStreamError(TranscodeError):
    """
    A record has an invalid length prefix or an undecodable payload.
    """


class TruncatedStreamError(TranscodeError):
    """
    The input ended in the middle of a record.
    """


class ChunkWriteError(BackupError):
    """
    A chunk file could not be created or written.
    """


class DumpError(BackupError):
    """
    The external dump tool failed.
    """


class AuthError(BackupError):
    """
    Authentication with the remote store failed.
    """


class NotAuthenticatedError(BackupError):
    """
    A data operation was called before authenticate().
    """


class ListError(BackupError):
    """
    Listing the remote objects failed. Partial listings are never returned.
    """


class DownloadError(BackupError):
    """
    Downloading a remote object failed.
    """


class UploadError(BackupError):
    """
    Uploading an object failed for good.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        """
        :param message: error message
        :param cause: last underlying error
        """
        super().__init__(message)
        self.cause = cause


class B2ApiError(BackupError):
    """
    Error response of the B2 API.
    """

    def __init__(self, status: int, code: str = '', message: str = '',
                 retry_after: Optional[float] = None):
        """
        :param status: HTTP status code
        :param code: B2 error code e.g. expired_auth_token
        :param message: error message sent by B2
        :param retry_after: value of the Retry-After header in seconds
        """
        super().__init__(f'B2 API error {status} ({code}): {message}')
        self.status = status
        self.code = code
        self.message = message
        self.retry_after = retry_after

    @property
    def expired_auth(self) -> bool:
        """
        Whether the authorization token has expired and a new one is needed.
        """
        return self.status == 401 and self.code == 'expired_auth_token'

    @property
    def retryable(self) -> bool:
        """
        Timeouts, rate limits and server errors are worth another try.
        """
        return self.expired_auth or self.status in (408, 429) or self.status >= 500


class RunCancelledError(BackupError):
    """
    The run was stopped between two steps.
    """

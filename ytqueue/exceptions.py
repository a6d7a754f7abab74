"""
Defines custom exceptions used throughout the application.

These exceptions allow for more specific error handling than built-in exceptions.
"""
from typing import Optional


class YtQueueError(Exception):
    """Base class for all application errors."""
    pass

class ValidationError(YtQueueError):
    """Raised for bad input. Never retried."""
    pass

class NotFoundError(YtQueueError):
    """Raised when a requested resource does not exist."""
    pass

class AccessDeniedError(YtQueueError):
    """Raised when a request reaches outside the directory it may touch."""
    pass

class JobNotFoundError(NotFoundError):
    """Raised when operating on a job id that is not in the store."""
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id

class JobExistsError(YtQueueError):
    """Raised when creating a job whose id is already in the store."""
    def __init__(self, job_id: str):
        super().__init__("Job already exists")
        self.job_id = job_id

class DownloadError(YtQueueError):
    """Raised when the yt-dlp process fails to start or exits non-zero."""
    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr

class MetadataExtractionError(YtQueueError):
    """Custom exception for metadata probe failures."""
    pass

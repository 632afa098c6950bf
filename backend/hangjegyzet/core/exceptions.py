from typing import Any, Dict, Optional

from fastapi import HTTPException, status

from hangjegyzet.models.models import PipelineErrorKind


class BaseAPIException(HTTPException):
    """Base API exception with status code and detail"""

    def __init__(
        self,
        status_code: int,
        detail: Any,
        code: str = "error",
        headers: dict = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.code = code


class NotFoundException(BaseAPIException):
    """Exception for resource not found"""

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail,
            code="not_found",
        )


class ResourceNotFoundError(NotFoundException):
    """Raised by CRUD helpers when a record does not exist"""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(detail=f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class ValidationError(BaseAPIException):
    """Exception for validation errors"""

    def __init__(self, detail: Any = "Validation error", code: str = "validation_error"):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            code=code,
        )


class RateLimitExceeded(BaseAPIException):
    """Exception for burst or concurrency limits"""

    def __init__(self, detail: Any = "Rate limit exceeded", retry_after: Optional[int] = None):
        headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=detail,
            code="rate_limit_exceeded",
            headers=headers,
        )


class QuotaExceededException(BaseAPIException):
    """Exception for exhausted monthly mode allocation"""

    def __init__(self, detail: Any = "Monthly limit exceeded", code: str = "organization_limit_exceeded"):
        super().__init__(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=detail,
            code=code,
        )


class ModeNotAvailableException(BaseAPIException):
    """Exception for a mode the organization's plan does not include"""

    def __init__(self, detail: Any = "Mode not available", code: str = "mode_not_available"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
            code=code,
        )


class ServiceUnavailableException(BaseAPIException):
    """Exception for unavailable backing services"""

    def __init__(self, detail: str = "Service temporarily unavailable"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            code="service_unavailable",
        )


class DatabaseError(Exception):
    """Raised when a database operation fails"""


class QuotaStoreUnavailableError(Exception):
    """Raised when the usage counter or burst datastore cannot be reached"""


class InvalidStateTransitionError(Exception):
    """Raised when a job state change would regress the lifecycle"""

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(f"Job {job_id}: illegal transition {current} -> {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class PipelineException(Exception):
    """
    Base class for failures raised by pipeline stages

    Subclasses pin the error kind so the classifier can map them without
    inspecting messages.
    """

    kind: PipelineErrorKind = PipelineErrorKind.UNKNOWN

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details or {}


class AudioFileNotFoundError(PipelineException):
    kind = PipelineErrorKind.FILE_NOT_FOUND


class FileTooLargeError(PipelineException):
    kind = PipelineErrorKind.FILE_TOO_LARGE


class InvalidFileFormatError(PipelineException):
    kind = PipelineErrorKind.FILE_INVALID_FORMAT


class FileCorruptedError(PipelineException):
    kind = PipelineErrorKind.FILE_CORRUPTED


class InsufficientAudioQualityError(PipelineException):
    kind = PipelineErrorKind.INSUFFICIENT_AUDIO_QUALITY


class LanguageNotSupportedError(PipelineException):
    kind = PipelineErrorKind.LANGUAGE_NOT_SUPPORTED


class ProcessingFailedError(PipelineException):
    kind = PipelineErrorKind.PROCESSING_FAILED


class WorkerCrashedError(PipelineException):
    kind = PipelineErrorKind.WORKER_CRASHED


class OrganizationLimitExceededError(PipelineException):
    kind = PipelineErrorKind.ORGANIZATION_LIMIT_EXCEEDED


class SubscriptionExpiredError(PipelineException):
    kind = PipelineErrorKind.SUBSCRIPTION_EXPIRED


class ModeNotAvailableError(PipelineException):
    kind = PipelineErrorKind.MODE_NOT_AVAILABLE


class ProviderError(PipelineException):
    """
    Non-success response from an external speech or language provider

    The kind is resolved by the classifier from the status code and the
    provider's error code.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(f"{provider}: {message}", {"status_code": status_code, "code": code})
        self.provider = provider
        self.status_code = status_code
        self.code = code
        self.retry_after = retry_after

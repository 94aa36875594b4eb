from typing import Optional
import logging

logger = logging.getLogger(__name__)

class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, user_message: Optional[str] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.user_message = user_message or "An error occurred. Please try again later."
        super().__init__(self.message)

class ValidationError(AppError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message, user_message=message)

class CaptureError(AppError):
    """Microphone acquisition or recording failure. Never retried automatically."""

    PERMISSION_DENIED = "Microphone access was denied. Please allow microphone access and try again."
    NO_DEVICE = "No microphone was found. Please connect a microphone and try again."
    NO_AUDIO_DATA = "No audio data was recorded. Please try again."
    ALREADY_RECORDING = "A recording is already in progress."

    status_code = 400

    def __init__(self, user_message: str, detail: Optional[str] = None):
        super().__init__(detail or user_message, user_message=user_message)

class AnalysisError(AppError):
    status_code = 502

    def __init__(self, message: str):
        super().__init__(message, user_message=message)

class StorageError(AppError):
    status_code = 503

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(
            message,
            user_message=user_message or "There was an issue reaching your saved data. Please try again."
        )

class AuthError(AppError):
    status_code = 401

    def __init__(self, message: str, user_message: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code, user_message=user_message or message)

class QuotaExceededError(AppError):
    """Raised when an identity has no checks left in its current period.

    Anonymous callers are asked to sign up, free-tier accounts to upgrade.
    """

    def __init__(self, scope: str, used: int, limit: int):
        self.scope = scope
        self.used = used
        self.limit = limit
        if scope == 'anonymous':
            user_message = (
                f"You have used all {limit} free stress checks. "
                "Sign up for an account to get more checks every month."
            )
            status_code = 403
        else:
            user_message = (
                f"You have used all {limit} stress checks for this month. "
                "Upgrade to premium for unlimited checks."
            )
            status_code = 402
        super().__init__(
            f"Quota exhausted for {scope} scope ({used}/{limit})",
            status_code=status_code,
            user_message=user_message
        )

class CheckInProgressError(AppError):
    status_code = 409

    def __init__(self):
        super().__init__(
            "Concurrent stress check rejected",
            user_message="A stress check is already in progress. Please wait for it to finish."
        )

class ErrorHandler:
    @staticmethod
    def handle_analysis_error(error: Exception) -> str:
        logger.error(f"Analysis error: {str(error)}")
        if isinstance(error, AppError):
            return error.user_message
        return "Sorry, I couldn't analyze your recording. Please try again."

    @staticmethod
    def handle_storage_error(error: Exception) -> str:
        logger.error(f"Storage error: {str(error)}")
        if isinstance(error, AppError):
            return error.user_message
        return "There was an issue saving your report. Please try again."

    @staticmethod
    def handle_auth_error(error: Exception) -> str:
        logger.error(f"Auth error: {str(error)}")
        if isinstance(error, AppError):
            return error.user_message
        return "Authentication failed. Please try again."

    @staticmethod
    def handle_capture_error(error: Exception) -> str:
        logger.error(f"Capture error: {str(error)}")
        if isinstance(error, AppError):
            return error.user_message
        return "Recording failed. Please try again."

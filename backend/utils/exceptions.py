"""
Centralized exception definitions for the backend application.
"""

class AppError(Exception):
    """Base class for application errors."""
    def __init__(self, message: str, status_code: int = 500, detail: str = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail or message

    @property
    def kind(self) -> str:
        """Machine-readable error kind."""
        return type(self).__name__

class NotFoundError(AppError):
    """Raised when a subject or queue entry is not found."""
    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, status_code=404)

class ValidationError(AppError):
    """Raised when input validation fails."""
    def __init__(self, message: str = "Invalid input"):
        super().__init__(message, status_code=400)

class InvalidStateError(AppError):
    """Raised when an operation is not allowed in the current job/subject state."""
    def __init__(self, message: str = "Invalid state"):
        super().__init__(message, status_code=400)

class UnauthorizedError(AppError):
    """Raised when the trigger shared secret does not match."""
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, status_code=401)

class InfrastructureError(AppError):
    """Raised when the store or another backing service fails."""
    def __init__(self, message: str = "Infrastructure failure", detail: str = None):
        super().__init__(message, status_code=500, detail=detail)

class WorkerRejection(AppError):
    """Raised when the transcription worker is unreachable or refuses a job."""
    def __init__(self, message: str = "Worker rejected the job"):
        super().__init__(message, status_code=502)

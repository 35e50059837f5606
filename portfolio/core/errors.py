"""
Error taxonomy shared by the backend service and the client.
"""

from typing import List, Optional


class PortfolioError(Exception):
    """Base class for portfolio sync errors."""
    pass


class Unauthenticated(PortfolioError):
    """A required session is missing or expired."""

    def __init__(self, message: str = "User must be authenticated"):
        super().__init__(message)


class PermissionDenied(PortfolioError):
    """The session exists but may not perform the operation (guest, non-owner)."""

    def __init__(self, message: str = "Only the portfolio owner can modify content"):
        super().__init__(message)


class ValidationFailed(PortfolioError):
    """Carries human-readable validation messages."""

    def __init__(self, errors: List[str], message: Optional[str] = None):
        self.errors = list(errors)
        super().__init__(message or f"Validation failed: {', '.join(self.errors)}")


class BackendError(PortfolioError):
    """Network or storage fault."""
    pass


class BackupError(PortfolioError):
    """A backup copy could not be written when one was required."""
    pass

# backend/core/errors.py

from __future__ import annotations


class RoomServiceError(Exception):
    """
    Base class for operational errors.

    Carries the HTTP status the REST layer answers with. The WebSocket
    gateway only uses the message, and only for the originating connection.
    """

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


# ============================================================================
# VALIDATION / AUTH
# ============================================================================

class ValidationError(RoomServiceError):
    status_code = 400


class AuthenticationFailed(RoomServiceError):
    status_code = 401


class AuthorizationDenied(RoomServiceError):
    status_code = 403


class AccessDenied(AuthorizationDenied):
    def __init__(self, message: str = "Access denied - not a room member") -> None:
        super().__init__(message)


class NotAMember(AuthorizationDenied):
    def __init__(self, message: str = "Not a member of this room") -> None:
        super().__init__(message)


# ============================================================================
# NOT FOUND
# ============================================================================

class NotFound(RoomServiceError):
    status_code = 404


class RoomNotFound(NotFound):
    def __init__(self, message: str = "Room not found") -> None:
        super().__init__(message)


class UserNotFound(NotFound):
    def __init__(self, message: str = "User not found") -> None:
        super().__init__(message)


# ============================================================================
# CONFLICT
# ============================================================================

class Conflict(RoomServiceError):
    status_code = 409


class RoomFull(Conflict):
    def __init__(self, message: str = "Room is full") -> None:
        super().__init__(message)


class AlreadyMember(Conflict):
    def __init__(self, message: str = "Already a member of this room") -> None:
        super().__init__(message)


class RoomClosed(Conflict):
    def __init__(self, message: str = "Room is completed") -> None:
        super().__init__(message)


class CodeGenerationExhausted(Conflict):
    # Repeated collisions mean the code space is saturated; operators must look.
    status_code = 503

    def __init__(self, message: str = "Failed to generate unique room code") -> None:
        super().__init__(message)


# ============================================================================
# INFRASTRUCTURE
# ============================================================================

class TransientInfra(RoomServiceError):
    status_code = 503


class QueueUnavailable(TransientInfra):
    def __init__(self, message: str = "Persistence queue unavailable") -> None:
        super().__init__(message)

"""Error taxonomy for the credential flows.

Every error is an ``HTTPException`` so the application's HTTP exception handler
renders it as an ``ErrorResponse``. Messages are fixed per class: call sites pick
a class, never a wording, which keeps credential failures indistinguishable.
"""

from fastapi import HTTPException, status


class AuthError(HTTPException):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"
    message: str = "Internal server error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(status_code=self.status_code, detail=detail or self.message)


class ValidationError(AuthError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"
    message = "Invalid request"


class AlreadyExists(AuthError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_exists"
    message = "User already exists"


class NotFound(AuthError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    message = "User not found"


class NotAuthenticated(AuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "not_authenticated"
    message = "Not authenticated"


class InvalidCredentials(AuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "invalid_credentials"
    message = "Invalid credentials"

    def __init__(self) -> None:
        super().__init__()


class VerificationFailed(AuthError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "verification_failed"
    message = "Registration verification failed"


class PasskeyAuthenticationFailed(AuthError):
    """Any failure while verifying a passkey assertion."""

    status_code = status.HTTP_401_UNAUTHORIZED
    code = "verification_failed"
    message = "Passkey verification failed"

    def __init__(self) -> None:
        super().__init__()


class UnknownCredential(PasskeyAuthenticationFailed):
    pass


class InternalError(AuthError):
    pass


def invalid_credentials() -> InvalidCredentials:
    return InvalidCredentials()


def passkey_authentication_failed() -> PasskeyAuthenticationFailed:
    return PasskeyAuthenticationFailed()

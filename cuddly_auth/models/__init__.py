from cuddly_auth.db.base import Base  # noqa: F401
from cuddly_auth.models.user import User  # noqa: F401
from cuddly_auth.models.authenticator import Authenticator  # noqa: F401
from cuddly_auth.models.challenge import ChallengePurpose, WebAuthnChallenge  # noqa: F401

__all__ = [
    "Base",
    "User",
    "Authenticator",
    "ChallengePurpose",
    "WebAuthnChallenge",
]

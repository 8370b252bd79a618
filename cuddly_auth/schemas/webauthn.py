from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class RegisterOptionsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: UUID = Field(alias="userID")


class VerifyRegistrationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: UUID = Field(alias="userID")
    response: dict[str, Any]
    expected_challenge: str = Field(alias="expectedChallenge", min_length=1)


class AuthOptionsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_email: str | None = Field(default=None, alias="userEmail")


class VerifyAuthenticationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    response: dict[str, Any]
    expected_challenge: str = Field(alias="expectedChallenge", min_length=1)


class OptionsResponse(BaseModel):
    options: dict[str, Any]
    challenge: str


class AuthenticatorSummary(BaseModel):
    id: UUID
    credential_id: str = Field(serialization_alias="credentialID")


class VerifyRegistrationResponse(BaseModel):
    success: bool
    verified: bool
    authenticator: AuthenticatorSummary

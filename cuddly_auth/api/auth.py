from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from cuddly_auth.core.config import settings
from cuddly_auth.core.rate_limit import client_ip, per_identifier_limiter
from cuddly_auth.core.sessions import clear_session_cookie, read_session, set_session_cookie
from cuddly_auth.db.session import get_session
from cuddly_auth.schemas.auth import (
    AuthResponse,
    LoginRequest,
    LoginResponse,
    LoginUserResponse,
    RegisterRequest,
    SessionResponse,
    UserResponse,
)
from cuddly_auth.services import auth as auth_service

router = APIRouter(prefix="/auth", tags=["auth"])

register_rate_limit = per_identifier_limiter(client_ip, settings.auth_rate_limit_register, 60)
login_rate_limit = per_identifier_limiter(client_ip, settings.auth_rate_limit_login, 60)


@router.post("/register", status_code=status.HTTP_201_CREATED, response_model=AuthResponse)
async def register(
    payload: RegisterRequest,
    response: Response,
    session: AsyncSession = Depends(get_session),
    _: None = Depends(register_rate_limit),
) -> AuthResponse:
    user = await auth_service.register_user(session, payload)
    set_session_cookie(response, user)
    return AuthResponse(user=UserResponse.model_validate(user))


@router.post("/login", response_model=LoginResponse)
async def login(
    payload: LoginRequest,
    response: Response,
    session: AsyncSession = Depends(get_session),
    _: None = Depends(login_rate_limit),
) -> LoginResponse:
    user = await auth_service.authenticate_user(session, payload.email, payload.password)
    set_session_cookie(response, user)
    return LoginResponse(user=LoginUserResponse.model_validate(user))


@router.post("/logout")
async def logout(response: Response) -> dict:
    clear_session_cookie(response)
    return {}


@router.get("/session", response_model=SessionResponse)
async def current_session(request: Request) -> SessionResponse:
    payload = read_session(request)
    if payload is None:
        return SessionResponse()
    return SessionResponse(user=UserResponse(**payload["user"]), expires=payload.get("expires"))

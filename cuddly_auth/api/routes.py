from fastapi import APIRouter

from cuddly_auth.api import auth
from cuddly_auth.api import webauthn

api_router = APIRouter()

api_router.include_router(auth.router)
api_router.include_router(webauthn.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}

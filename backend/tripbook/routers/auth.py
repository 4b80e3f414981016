from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from tripbook.container import Container
from tripbook.models import AuthLoginRequest, AuthLoginResponse, AuthMeResponse
from tripbook.routers.common import get_container

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest, container: Container = Depends(get_container)):
    user_id = payload.user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    # Unknown users and wrong passwords get the same answer.
    if not container.participants.check_credentials(user_id, payload.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token, expires_at = container.tokens.create_access_token(user_id)
    return AuthLoginResponse(access_token=token, user_id=user_id, expires_at=expires_at)


@router.get("/me", response_model=AuthMeResponse)
def me(
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    return AuthMeResponse(user_id=container.tokens.require_user(authorization))

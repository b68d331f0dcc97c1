import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from common.security import verify_token, ROLE_CREATOR
from settlement_service.container import Services

bearer_scheme = HTTPBearer(auto_error=False)

def get_services(request: Request) -> Services:
    return request.app.state.services

def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        return verify_token(credentials.credentials)
    except jwt.PyJWTError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")

def require_creator(user: dict = Depends(get_current_user)) -> str:
    """Returns the creator id of a creator-role caller."""
    if user.get("role") != ROLE_CREATOR:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Creator access required")
    return user["sub"]

def get_buyer_email(user: dict = Depends(get_current_user)) -> str:
    email = (user.get("email") or "").strip().lower()
    if not email:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token carries no email")
    return email

import time, jwt
from typing import Dict, Optional
from common.settings import settings

ALGO = "HS256"

ROLE_CREATOR = "creator"
ROLE_BUYER = "buyer"

def mint_user_jwt(sub: str, email: str, role: str, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": sub,
        "email": email,
        "role": role,
        "iat": now,
        "exp": now + settings.jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str) -> Dict:
    options = {"require": ["exp", "iat", "iss", "sub"]}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        options=options,
        issuer=settings.jwt_issuer,
    )

from fastapi import Depends, Header, HTTPException
from jose import jwt
from jose.exceptions import JOSEError

from app import config


def verify_token(authorization: str = Header(None)) -> dict:
    """Decode the bearer token and return its claims."""
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported auth scheme")
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except (ValueError, JOSEError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def require_admin(claims: dict = Depends(verify_token)) -> dict:
    if claims.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return claims

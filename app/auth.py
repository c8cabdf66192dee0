# app/auth.py
import logging
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import settings
from .services.auth import decode_jwt_token
from .services.auth.firebase_service import user_id_from_claims, verify_firebase_id_token

logger = logging.getLogger(__name__)

oauth2_scheme = HTTPBearer(auto_error=False)


def resolve_user_id(token: str) -> Optional[str]:
    """Firebase ID token when Firebase is configured, otherwise our own JWT."""
    if settings.firebase_configured:
        claims = verify_firebase_id_token(token)
        if claims:
            return user_id_from_claims(claims)
    payload = decode_jwt_token(token)
    if payload:
        return payload.get("sub")
    return None


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(oauth2_scheme)) -> str:
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Authentication required")
    user_id = resolve_user_id(credentials.credentials)
    if not user_id:
        logger.warning("Token verification failed - invalid or expired token")
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return str(user_id)

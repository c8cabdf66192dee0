from typing import Optional, Dict, Any
import logging

import firebase_admin
from firebase_admin import credentials, auth as fb_auth

from app.config import settings


logger = logging.getLogger(__name__)


def _firebase_app() -> Optional[firebase_admin.App]:
    if not settings.firebase_configured:
        return None
    if firebase_admin._apps:  # type: ignore[attr-defined]
        return firebase_admin.get_app()
    try:
        cred = credentials.Certificate({
            "type": "service_account",
            "project_id": settings.FIREBASE_PROJECT_ID,
            "private_key": settings.FIREBASE_PRIVATE_KEY,
            "client_email": settings.FIREBASE_CLIENT_EMAIL,
            "token_uri": "https://oauth2.googleapis.com/token",
        })
        return firebase_admin.initialize_app(cred, {"projectId": settings.FIREBASE_PROJECT_ID})
    except ValueError as e:
        logger.error(f"Failed to initialize Firebase app: {e}")
        return None


def verify_firebase_id_token(id_token: str) -> Optional[Dict[str, Any]]:
    """Decoded claims of a valid Firebase ID token, else None."""
    app = _firebase_app()
    if app is None:
        return None
    try:
        return fb_auth.verify_id_token(id_token, app=app)
    except (ValueError, fb_auth.InvalidIdTokenError, fb_auth.ExpiredIdTokenError, fb_auth.RevokedIdTokenError, fb_auth.CertificateFetchError) as e:
        logger.warning(f"Firebase token verification failed: {e}")
        return None


def user_id_from_claims(claims: Dict[str, Any]) -> Optional[str]:
    return claims.get("uid") or claims.get("sub")

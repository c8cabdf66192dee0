# Services package (re-export feature modules for stable imports)
from .auth import create_jwt_token, decode_jwt_token

__all__ = [
    "create_jwt_token",
    "decode_jwt_token",
]

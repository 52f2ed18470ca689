from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from jose import jwt

from portal.config import settings
from portal.schemas.identity import Identity

def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token with the given data and expiration.
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

    return encoded_jwt

def create_identity_token(identity: Identity, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a token carrying the identity facts the audience resolver needs."""
    claims = {
        "sub": identity.user_id,
        "name": identity.name,
        "role": identity.role,
        "class_section": identity.class_section,
        "student_id": identity.student_id,
        "assigned_class_sections": identity.assigned_class_sections,
    }
    return create_access_token(
        {key: value for key, value in claims.items() if value is not None},
        expires_delta,
    )

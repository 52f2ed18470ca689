from typing import List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import ValidationError

from portal.audience import CreatorRole
from portal.config import settings
from portal.resolver import AdminViewer, StudentViewer, TeacherViewer, ViewerContext
from portal.schemas.identity import Identity

# Tokens are issued by the identity provider; this service only verifies them
bearer_scheme = HTTPBearer(auto_error=False)

STUDENT_ROLE = "Student"
TEACHER_ROLES = [CreatorRole.TEACHER.value, CreatorRole.CLASS_TEACHER.value, CreatorRole.SUBJECT_TEACHER.value]
ADMIN_ROLES = [CreatorRole.PRINCIPAL.value, CreatorRole.OWNER.value]
AUTHOR_ROLES = [role.value for role in CreatorRole]


def decode_identity(token: str) -> Identity:
    """
    Decode a JWT access token into the caller's identity.

    Raises:
        HTTPException: If the token is invalid, expired, or missing claims
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )
    except ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except JWTError:
        raise credentials_exception

    user_id = payload.get("sub")
    role = payload.get("role")
    if user_id is None or role is None:
        raise credentials_exception

    try:
        return Identity(
            user_id=str(user_id),
            name=payload.get("name"),
            role=role,
            class_section=payload.get("class_section"),
            student_id=payload.get("student_id"),
            assigned_class_sections=payload.get("assigned_class_sections") or [],
        )
    except ValidationError:
        raise credentials_exception


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Identity:
    """Get the authenticated caller from the bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decode_identity(credentials.credentials)


def resolve_viewer(identity: Optional[Identity]) -> Optional[ViewerContext]:
    """
    Map an identity to the viewer context used for audience matching.

    Returns None when the role is unknown or a student lacks the class-section
    or student id needed to match them; such viewers receive nothing.
    """
    if identity is None:
        return None
    if identity.role == STUDENT_ROLE:
        if not identity.class_section or not identity.student_id:
            return None
        return StudentViewer(class_section=identity.class_section, student_id=identity.student_id)
    if identity.role in TEACHER_ROLES:
        return TeacherViewer(assigned_class_sections=frozenset(identity.assigned_class_sections))
    if identity.role in ADMIN_ROLES:
        return AdminViewer(role=CreatorRole(identity.role))
    return None


async def get_viewer_context(identity: Identity = Depends(get_current_identity)) -> ViewerContext:
    viewer = resolve_viewer(identity)
    if viewer is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your account has no announcement audience"
        )
    return viewer


class RoleChecker:
    """
    Dependency for checking if the caller has the required role(s).
    """
    def __init__(self, allowed_roles: List[str]):
        self.allowed_roles = allowed_roles

    async def __call__(self, identity: Identity = Depends(get_current_identity)) -> Identity:
        if not self.check_permission(identity):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not authorized to manage announcements"
            )
        return identity

    def check_permission(self, identity: Identity) -> bool:
        """
        Check if an identity has any of the allowed roles.
        """
        return identity.role in self.allowed_roles


allow_authors = RoleChecker(AUTHOR_ROLES)

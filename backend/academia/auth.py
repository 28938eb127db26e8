"""Authentication helpers and FastAPI security dependencies.

This module provides utilities to decode JWT tokens, a dependency
`get_current_user` that validates the bearer token and returns the
corresponding `User`, and small role guards that resolve the caller's
student or teacher profile.

Token verification raises HTTPExceptions on failure so the helpers can
be used directly inside route dependencies.
"""

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .database import get_session

bearer_scheme = HTTPBearer()


def decode_token(token: str):
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail='invalid token')


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(bearer_scheme),
    db: Session = Depends(get_session),
) -> models.User:
    """FastAPI dependency that returns the authenticated, active user."""
    payload = decode_token(credentials.credentials)
    user_id = payload.get('user_id')
    if not user_id:
        raise HTTPException(status_code=401, detail='invalid token payload')
    user = repositories.UserRepository(db).get(user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail='user not found or inactive')
    return user


def require_role(*roles: models.Role):
    """Build a dependency that only lets users with one of `roles` through."""
    def _guard(user: models.User = Depends(get_current_user)) -> models.User:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail='insufficient permissions')
        return user
    return _guard


require_admin = require_role(models.Role.ADMIN)


def current_student(
    user: models.User = Depends(require_role(models.Role.STUDENT)),
    db: Session = Depends(get_session),
) -> models.Student:
    student = repositories.StudentRepository(db).get_by_user(user.id)
    if not student:
        raise HTTPException(status_code=403, detail='student profile required')
    return student


def current_teacher(
    user: models.User = Depends(require_role(models.Role.TEACHER)),
    db: Session = Depends(get_session),
) -> models.Teacher:
    teacher = repositories.TeacherRepository(db).get_by_user(user.id)
    if not teacher:
        raise HTTPException(status_code=403, detail='teacher profile required')
    return teacher

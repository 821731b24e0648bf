"""FastAPI dependency injection — auth guards and project actor resolution."""
import os
from dataclasses import dataclass
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.db import get_db
from app.models.orm_models import User

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "changethis_use_a_real_secret_in_production_64chars")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

security = HTTPBearer(auto_error=False)


@dataclass
class ProjectActor:
    """Authenticated user resolved against one project's roster."""
    user_id: str
    role: str
    email: str | None = None
    name: str | None = None


def decode_subject(token: str) -> str | None:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub") or None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id = decode_subject(credentials.credentials)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")
    return user


def get_store(request: Request):
    return request.app.state.store


def get_registry(request: Request):
    return request.app.state.sessions


async def get_project_actor(
    project_id: str,
    user: User = Depends(get_current_user),
    store=Depends(get_store),
) -> ProjectActor:
    """
    Role on this project: 'owner' for the creator, the membership role for
    team members. Non-members get 403; unknown role strings resolve to the
    public tier downstream.
    """
    role = await store.member_role(project_id, user.id)
    if role is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a member of this project")
    return ProjectActor(user_id=str(user.id), role=role, email=user.email, name=user.full_name)

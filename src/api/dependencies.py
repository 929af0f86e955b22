"""FastAPI dependency injection helpers."""

from typing import Optional

from fastapi import Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.domain.entities import Session
from src.domain.enums import Role
from src.infrastructure.database import async_session_factory
from src.services.dispatch import DispatchService


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def parse_identity(user_id: Optional[str], role: Optional[str]) -> Optional[Session]:
    """Build the caller's identity from the values the identity service forwards."""
    if not user_id or not role:
        return None
    try:
        return Session(user_id=user_id, role=Role(role.lower()))
    except ValueError:
        return None


def get_current_session(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Session:
    session = parse_identity(x_user_id, x_user_role)
    if session is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    return session


def get_dispatch(request: Request) -> DispatchService:
    return request.app.state.dispatch

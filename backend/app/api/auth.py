import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.models import User
from app.schemas import SessionOut, UserOut
from app.services.auth import create_access_token, get_current_user, get_or_create_user
from app.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)

settings.log_status()
logger.info("Session authorization environment check completed")


@router.post("/api/auth/session", response_model=SessionOut)
async def create_session(
    name: str = Form(...),
    user_id: Optional[str] = Form(None),
    session: AsyncSession = Depends(get_async_session),
) -> SessionOut:
    if not name.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="name_required")
    user = await get_or_create_user(session, user_id, name)
    return SessionOut(access_token=create_access_token(user.id), user=UserOut.model_validate(user))


@router.get("/api/auth/me", response_model=UserOut)
async def me(current_user: User = Depends(get_current_user)) -> UserOut:
    return UserOut.model_validate(current_user)

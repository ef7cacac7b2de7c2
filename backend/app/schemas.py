from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class UserOut(BaseModel):
    id: str
    name: str
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class SessionOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    created_at: Optional[datetime] = None

    @staticmethod
    def normalize_email(email: str) -> str:
        return (email or "").strip().lower()

from pydantic import BaseModel
from typing import Optional
from models.user import UserRole

class TokenData(BaseModel):
    user_id: Optional[str] = None
    role: Optional[UserRole] = None

class CurrentUser(BaseModel):
    id: str
    email: str
    name: str
    role: UserRole

    class Config:
        from_attributes = True

from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from core.database import BaseModel

class User(BaseModel):
    __tablename__ = "users"

    username = Column(String(100), unique=True, nullable=False)
    email = Column(String(255))
    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<User(username='{self.username}')>"

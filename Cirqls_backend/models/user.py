from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from app.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, nullable=True)
    profile_pic_src = Column(String, nullable=True)  # media locator, storage is external
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Follow(Base):
    __tablename__ = "follows"
    __table_args__ = (
        UniqueConstraint('follower_id', 'followed_id', name='uq_follow'),
    )

    id = Column(Integer, primary_key=True, index=True)
    follower_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    followed_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    followed_at = Column(DateTime(timezone=True), server_default=func.now())

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Boolean, UniqueConstraint
from sqlalchemy.sql import func
from app.database import Base


class Post(Base):
    __tablename__ = "posts"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String, nullable=False, default="text")  # text|media
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)  # text posts
    media_src = Column(String, nullable=True)  # media posts
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    community_id = Column(Integer, ForeignKey("communities.id"), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PostReaction(Base):
    __tablename__ = "post_reactions"
    __table_args__ = (
        UniqueConstraint('post_id', 'user_id', name='uq_post_reaction'),
    )

    id = Column(Integer, primary_key=True, index=True)
    post_id = Column(Integer, ForeignKey("posts.id"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    reaction = Column(String, nullable=False)  # like|dislike
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SavedPost(Base):
    __tablename__ = "saved_posts"
    __table_args__ = (
        UniqueConstraint('post_id', 'user_id', name='uq_saved_post'),
    )

    id = Column(Integer, primary_key=True, index=True)
    post_id = Column(Integer, ForeignKey("posts.id"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    saved_at = Column(DateTime(timezone=True), server_default=func.now())


class Comment(Base):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True, index=True)
    parent_comment_id = Column(Integer, ForeignKey("comments.id"), index=True, nullable=True)
    post_id = Column(Integer, ForeignKey("posts.id"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CommentReaction(Base):
    __tablename__ = "comment_reactions"
    __table_args__ = (
        UniqueConstraint('comment_id', 'user_id', name='uq_comment_reaction'),
    )

    id = Column(Integer, primary_key=True, index=True)
    comment_id = Column(Integer, ForeignKey("comments.id"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    reaction = Column(String, nullable=False)  # like|dislike
    created_at = Column(DateTime(timezone=True), server_default=func.now())

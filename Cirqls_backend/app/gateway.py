import logging
from collections import defaultdict
from typing import Any, Iterable

from fastapi import Depends
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.database import get_db
from app.errors import UpstreamFailure
from models.chat import Message
from models.community import Community, Member, Moderator
from models.feed import Comment, CommentReaction, Post, PostReaction, SavedPost
from models.user import Follow, User

logger = logging.getLogger("cirqls.gateway")

Row = dict[str, Any]

Sender = aliased(User)
Recipient = aliased(User)
ParentComment = aliased(Comment)


class EntityStoreGateway:
    """Narrow read/write contract over the relational store.

    Reads return flat rows (plain dicts) and never trees or aggregates;
    assembling those is the job of the services layer. Every storage error
    surfaces as :class:`UpstreamFailure`.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------
    async def _rows(self, stmt) -> list[Row]:
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("entity store read failed: %s", exc)
            raise UpstreamFailure("Entity store unavailable") from exc
        return [dict(row) for row in result.mappings().all()]

    async def _first(self, stmt) -> Row | None:
        rows = await self._rows(stmt.limit(1))
        return rows[0] if rows else None

    async def _scalar(self, stmt):
        try:
            return (await self.db.execute(stmt)).scalar()
        except SQLAlchemyError as exc:
            logger.error("entity store read failed: %s", exc)
            raise UpstreamFailure("Entity store unavailable") from exc

    async def _execute(self, stmt) -> int:
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("entity store write failed: %s", exc)
            raise UpstreamFailure("Entity store unavailable") from exc
        return result.rowcount or 0

    async def _add(self, obj):
        try:
            self.db.add(obj)
            await self.db.commit()
            await self.db.refresh(obj)
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("entity store write failed: %s", exc)
            raise UpstreamFailure("Entity store unavailable") from exc
        return obj

    # ------------------------------------------------------------------
    # users & follows
    # ------------------------------------------------------------------
    def _user_select(self):
        return select(
            User.id.label("user_id"),
            User.username,
            User.email,
            User.profile_pic_src,
            User.created_at,
        )

    async def get_user(self, user_id: int) -> Row | None:
        return await self._first(self._user_select().where(User.id == user_id))

    async def get_user_by_username(self, username: str) -> Row | None:
        return await self._first(self._user_select().where(User.username == username))

    async def count_follows(self, user_id: int) -> tuple[int, int]:
        followers = await self._scalar(select(func.count(Follow.id)).where(Follow.followed_id == user_id))
        following = await self._scalar(select(func.count(Follow.id)).where(Follow.follower_id == user_id))
        return followers or 0, following or 0

    async def fetch_followers(self, user_id: int) -> list[Row]:
        stmt = (
            self._user_select()
            .join(Follow, Follow.follower_id == User.id)
            .where(Follow.followed_id == user_id)
            .order_by(Follow.followed_at.desc(), Follow.id.desc())
        )
        return await self._rows(stmt)

    async def fetch_following(self, user_id: int) -> list[Row]:
        stmt = (
            self._user_select()
            .join(Follow, Follow.followed_id == User.id)
            .where(Follow.follower_id == user_id)
            .order_by(Follow.followed_at.desc(), Follow.id.desc())
        )
        return await self._rows(stmt)

    async def follow(self, follower_id: int, followed_id: int) -> None:
        exists = await self._scalar(
            select(Follow.id).where(Follow.follower_id == follower_id, Follow.followed_id == followed_id)
        )
        if not exists:
            await self._add(Follow(follower_id=follower_id, followed_id=followed_id))

    async def unfollow(self, follower_id: int, followed_id: int) -> int:
        return await self._execute(
            delete(Follow).where(Follow.follower_id == follower_id, Follow.followed_id == followed_id)
        )

    async def update_user(self, user_id: int, values: dict[str, Any]) -> None:
        if values:
            await self._execute(update(User).where(User.id == user_id).values(**values))

    # ------------------------------------------------------------------
    # communities
    # ------------------------------------------------------------------
    def _community_select(self):
        members_count = (
            select(func.count(Member.id))
            .where(Member.community_id == Community.id)
            .correlate(Community)
            .scalar_subquery()
        )
        return select(
            Community.id.label("community_id"),
            Community.name,
            Community.title,
            Community.description,
            Community.type,
            Community.logo_src,
            Community.created_at,
            members_count.label("members_count"),
        )

    async def list_communities(self) -> list[Row]:
        return await self._rows(self._community_select().order_by(Community.name))

    async def get_community(self, community_id: int) -> Row | None:
        return await self._first(self._community_select().where(Community.id == community_id))

    async def get_community_by_name(self, name: str) -> Row | None:
        return await self._first(self._community_select().where(Community.name == name))

    async def fetch_community_members(self, community_id: int) -> list[Row]:
        stmt = (
            self._user_select()
            .join(Member, Member.user_id == User.id)
            .where(Member.community_id == community_id)
            .order_by(Member.joined_at, Member.id)
        )
        return await self._rows(stmt)

    async def fetch_community_moderators(self, community_id: int) -> list[Row]:
        stmt = (
            self._user_select()
            .join(Moderator, Moderator.user_id == User.id)
            .where(Moderator.community_id == community_id)
            .order_by(Moderator.id)
        )
        return await self._rows(stmt)

    async def is_moderator(self, community_id: int, user_id: int) -> bool:
        found = await self._scalar(
            select(Moderator.id).where(Moderator.community_id == community_id, Moderator.user_id == user_id)
        )
        return bool(found)

    async def join_community(self, community_id: int, user_id: int) -> None:
        exists = await self._scalar(
            select(Member.id).where(Member.community_id == community_id, Member.user_id == user_id)
        )
        if not exists:
            await self._add(Member(community_id=community_id, user_id=user_id))

    async def leave_community(self, community_id: int, user_id: int) -> int:
        return await self._execute(
            delete(Member).where(Member.community_id == community_id, Member.user_id == user_id)
        )

    async def insert_community(self, *, creator_id: int, name: str, title: str, description: str,
                               type: str, logo_src: str | None) -> int:
        community = await self._add(Community(
            name=name,
            title=title,
            description=description,
            type=type,
            logo_src=logo_src,
        ))
        await self._add(Moderator(community_id=community.id, user_id=creator_id))
        await self._add(Member(community_id=community.id, user_id=creator_id))
        return community.id

    async def update_community(self, community_id: int, values: dict[str, Any]) -> None:
        if values:
            await self._execute(update(Community).where(Community.id == community_id).values(**values))

    # ------------------------------------------------------------------
    # posts
    # ------------------------------------------------------------------
    def _post_select(self):
        return (
            select(
                Post.type,
                Post.id.label("post_id"),
                Post.title,
                Post.description,
                Post.media_src,
                Post.created_at,
                Post.user_id,
                User.username,
                User.profile_pic_src,
                Post.community_id,
                Community.name.label("community_name"),
                Community.title.label("community_title"),
                Community.logo_src.label("community_logo_src"),
            )
            .select_from(Post)
            .outerjoin(User, User.id == Post.user_id)
            .outerjoin(Community, Community.id == Post.community_id)
        )

    def _newest_first(self, stmt, window: int | None):
        stmt = stmt.order_by(Post.created_at.desc(), Post.id.desc())
        if window:
            stmt = stmt.limit(window)
        return stmt

    async def fetch_home_post_rows(self, user_id: int, window: int | None = None) -> list[Row]:
        joined = select(Member.community_id).where(Member.user_id == user_id)
        followed = select(Follow.followed_id).where(Follow.follower_id == user_id)
        stmt = self._post_select().where(
            or_(
                Post.community_id.in_(joined),
                Post.user_id.in_(followed),
                Post.user_id == user_id,
            )
        )
        return await self._rows(self._newest_first(stmt, window))

    async def fetch_explore_post_rows(self, window: int | None = None) -> list[Row]:
        return await self._rows(self._newest_first(self._post_select(), window))

    async def fetch_user_post_rows(self, user_id: int, window: int | None = None) -> list[Row]:
        return await self._rows(self._newest_first(self._post_select().where(Post.user_id == user_id), window))

    async def fetch_community_post_rows(self, community_id: int, window: int | None = None) -> list[Row]:
        stmt = self._post_select().where(Post.community_id == community_id)
        return await self._rows(self._newest_first(stmt, window))

    async def fetch_saved_post_rows(self, user_id: int) -> list[Row]:
        saved = select(SavedPost.post_id).where(SavedPost.user_id == user_id)
        return await self._rows(self._newest_first(self._post_select().where(Post.id.in_(saved)), None))

    async def fetch_post_row(self, post_id: int) -> Row | None:
        return await self._first(self._post_select().where(Post.id == post_id))

    async def fetch_post_reaction_rows(self, post_ids: Iterable[int]) -> list[Row]:
        post_ids = list(post_ids)
        if not post_ids:
            return []
        stmt = (
            select(PostReaction.post_id, PostReaction.user_id, PostReaction.reaction.label("type"))
            .where(PostReaction.post_id.in_(post_ids))
            .order_by(PostReaction.id)
        )
        return await self._rows(stmt)

    async def fetch_comment_ids_by_post(self, post_ids: Iterable[int]) -> dict[int, list[int]]:
        post_ids = list(post_ids)
        grouped: dict[int, list[int]] = defaultdict(list)
        if not post_ids:
            return {}
        stmt = (
            select(Comment.post_id, Comment.id.label("comment_id"))
            .where(Comment.post_id.in_(post_ids))
            .order_by(Comment.id)
        )
        for row in await self._rows(stmt):
            grouped[row["post_id"]].append(row["comment_id"])
        return dict(grouped)

    async def insert_post(self, *, user_id: int, community_id: int, type: str, title: str,
                          description: str | None = None, media_src: str | None = None) -> int:
        post = await self._add(Post(
            type=type,
            title=title,
            description=description,
            media_src=media_src,
            user_id=user_id,
            community_id=community_id,
        ))
        return post.id

    async def delete_post(self, post_id: int) -> None:
        comment_ids = select(Comment.id).where(Comment.post_id == post_id)
        try:
            await self.db.execute(delete(CommentReaction).where(CommentReaction.comment_id.in_(comment_ids)))
            await self.db.execute(delete(Comment).where(Comment.post_id == post_id))
            await self.db.execute(delete(PostReaction).where(PostReaction.post_id == post_id))
            await self.db.execute(delete(SavedPost).where(SavedPost.post_id == post_id))
            await self.db.execute(delete(Post).where(Post.id == post_id))
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("entity store write failed: %s", exc)
            raise UpstreamFailure("Entity store unavailable") from exc

    async def set_post_reaction(self, post_id: int, user_id: int, reaction: str) -> None:
        changed = await self._execute(
            update(PostReaction)
            .where(PostReaction.post_id == post_id, PostReaction.user_id == user_id)
            .values(reaction=reaction)
        )
        if not changed:
            await self._add(PostReaction(post_id=post_id, user_id=user_id, reaction=reaction))

    async def delete_post_reaction(self, post_id: int, user_id: int) -> int:
        return await self._execute(
            delete(PostReaction).where(PostReaction.post_id == post_id, PostReaction.user_id == user_id)
        )

    async def save_post(self, post_id: int, user_id: int) -> None:
        exists = await self._scalar(
            select(SavedPost.id).where(SavedPost.post_id == post_id, SavedPost.user_id == user_id)
        )
        if not exists:
            await self._add(SavedPost(post_id=post_id, user_id=user_id))

    async def unsave_post(self, post_id: int, user_id: int) -> int:
        return await self._execute(
            delete(SavedPost).where(SavedPost.post_id == post_id, SavedPost.user_id == user_id)
        )

    # ------------------------------------------------------------------
    # comments
    # ------------------------------------------------------------------
    def _comment_select(self):
        return (
            select(
                Comment.id.label("comment_id"),
                Comment.parent_comment_id,
                Comment.post_id,
                Comment.user_id,
                User.username,
                User.profile_pic_src,
                Comment.message,
                Comment.is_read,
                Comment.created_at,
            )
            .select_from(Comment)
            .outerjoin(User, User.id == Comment.user_id)
        )

    async def fetch_comment_rows(self, post_id: int) -> list[Row]:
        stmt = self._comment_select().where(Comment.post_id == post_id).order_by(Comment.created_at, Comment.id)
        return await self._rows(stmt)

    async def fetch_comment_row(self, comment_id: int) -> Row | None:
        return await self._first(self._comment_select().where(Comment.id == comment_id))

    async def fetch_user_comment_rows(self, user_id: int) -> list[Row]:
        stmt = self._comment_select().where(Comment.user_id == user_id).order_by(Comment.created_at, Comment.id)
        return await self._rows(stmt)

    async def fetch_comment_reaction_rows(self, comment_ids: Iterable[int]) -> list[Row]:
        comment_ids = list(comment_ids)
        if not comment_ids:
            return []
        stmt = (
            select(CommentReaction.comment_id, CommentReaction.user_id, CommentReaction.reaction.label("type"))
            .where(CommentReaction.comment_id.in_(comment_ids))
            .order_by(CommentReaction.id)
        )
        return await self._rows(stmt)

    async def insert_comment(self, *, post_id: int, user_id: int, message: str,
                             parent_comment_id: int | None = None) -> int:
        comment = await self._add(Comment(
            post_id=post_id,
            user_id=user_id,
            message=message,
            parent_comment_id=parent_comment_id,
        ))
        return comment.id

    async def delete_comment(self, comment_id: int) -> None:
        # Replies stay in place; the tree builder promotes them to roots
        try:
            await self.db.execute(delete(CommentReaction).where(CommentReaction.comment_id == comment_id))
            await self.db.execute(delete(Comment).where(Comment.id == comment_id))
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("entity store write failed: %s", exc)
            raise UpstreamFailure("Entity store unavailable") from exc

    async def set_comment_reaction(self, comment_id: int, user_id: int, reaction: str) -> None:
        changed = await self._execute(
            update(CommentReaction)
            .where(CommentReaction.comment_id == comment_id, CommentReaction.user_id == user_id)
            .values(reaction=reaction)
        )
        if not changed:
            await self._add(CommentReaction(comment_id=comment_id, user_id=user_id, reaction=reaction))

    async def delete_comment_reaction(self, comment_id: int, user_id: int) -> int:
        return await self._execute(
            delete(CommentReaction).where(CommentReaction.comment_id == comment_id, CommentReaction.user_id == user_id)
        )

    def _addressed_to(self, user_id: int):
        """Comments by others on the user's posts or replying to the user's comments."""
        own_posts = select(Post.id).where(Post.user_id == user_id)
        own_comments = select(ParentComment.id).where(ParentComment.user_id == user_id)
        return and_(
            Comment.user_id != user_id,
            or_(Comment.post_id.in_(own_posts), Comment.parent_comment_id.in_(own_comments)),
        )

    async def fetch_unread_comment_rows(self, user_id: int) -> list[Row]:
        stmt = (
            self._comment_select()
            .where(self._addressed_to(user_id), Comment.is_read.is_(False))
            .order_by(Comment.created_at.desc(), Comment.id.desc())
        )
        return await self._rows(stmt)

    async def mark_comments_read(self, comment_ids: Iterable[int], user_id: int) -> list[Row]:
        comment_ids = list(comment_ids)
        if not comment_ids:
            return []
        await self._execute(
            update(Comment)
            .where(Comment.id.in_(comment_ids), self._addressed_to(user_id))
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        stmt = self._comment_select().where(Comment.id.in_(comment_ids)).order_by(Comment.id)
        return await self._rows(stmt)

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------
    def _message_select(self):
        return (
            select(
                Message.id.label("message_id"),
                Message.sender_id,
                Sender.username.label("sender_username"),
                Sender.profile_pic_src.label("sender_profile_pic_src"),
                Message.recipient_id,
                Recipient.username.label("recipient_username"),
                Recipient.profile_pic_src.label("recipient_profile_pic_src"),
                Message.message,
                Message.sent_at,
                Message.is_read,
            )
            .select_from(Message)
            .outerjoin(Sender, Sender.id == Message.sender_id)
            .outerjoin(Recipient, Recipient.id == Message.recipient_id)
        )

    async def insert_message(self, *, sender_id: int, recipient_id: int, message: str) -> Row:
        created = await self._add(Message(sender_id=sender_id, recipient_id=recipient_id, message=message))
        return await self._first(self._message_select().where(Message.id == created.id))

    async def fetch_message_rows(self, user_id: int) -> list[Row]:
        stmt = (
            self._message_select()
            .where(or_(Message.sender_id == user_id, Message.recipient_id == user_id))
            .order_by(Message.sent_at, Message.id)
        )
        return await self._rows(stmt)

    async def fetch_conversation_rows(self, user_id: int, other_id: int) -> list[Row]:
        stmt = (
            self._message_select()
            .where(or_(
                and_(Message.sender_id == user_id, Message.recipient_id == other_id),
                and_(Message.sender_id == other_id, Message.recipient_id == user_id),
            ))
            .order_by(Message.sent_at, Message.id)
        )
        return await self._rows(stmt)

    async def fetch_unread_message_rows(self, user_id: int) -> list[Row]:
        stmt = (
            self._message_select()
            .where(Message.recipient_id == user_id, Message.is_read.is_(False))
            .order_by(Message.sent_at.desc(), Message.id.desc())
        )
        return await self._rows(stmt)

    async def mark_messages_read(self, message_ids: Iterable[int], user_id: int) -> list[Row]:
        message_ids = list(message_ids)
        if not message_ids:
            return []
        await self._execute(
            update(Message)
            .where(Message.id.in_(message_ids), Message.recipient_id == user_id)
            .values(is_read=True)
        )
        stmt = (
            self._message_select()
            .where(Message.id.in_(message_ids), or_(Message.sender_id == user_id, Message.recipient_id == user_id))
            .order_by(Message.id)
        )
        return await self._rows(stmt)

    # ------------------------------------------------------------------
    # search
    # ------------------------------------------------------------------
    async def search_users(self, term: str, limit: int = 20) -> list[Row]:
        stmt = self._user_select().where(User.username.ilike(f"%{term}%")).order_by(User.username).limit(limit)
        return await self._rows(stmt)

    async def search_communities(self, term: str, limit: int = 20) -> list[Row]:
        pattern = f"%{term}%"
        stmt = (
            self._community_select()
            .where(or_(Community.name.ilike(pattern), Community.title.ilike(pattern)))
            .order_by(Community.name)
            .limit(limit)
        )
        return await self._rows(stmt)

    async def search_posts(self, term: str, limit: int = 20) -> list[Row]:
        pattern = f"%{term}%"
        stmt = self._post_select().where(or_(Post.title.ilike(pattern), Post.description.ilike(pattern)))
        return await self._rows(self._newest_first(stmt, limit))


def get_gateway(db: AsyncSession = Depends(get_db)) -> EntityStoreGateway:
    return EntityStoreGateway(db)

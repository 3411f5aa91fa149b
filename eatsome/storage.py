# eatsome/storage.py
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from .codec import decode_food_insights, decode_ingredients, encode_food_insights, encode_ingredients
from .errors import NotFound, PersistenceError, ValidationError
from .locales import PROMPTS
from .models import (
    REACTION_TYPES,
    AuthorRead,
    BotMessage,
    Enrichment,
    EnrichmentStatus,
    Post,
    PostRead,
    PostTag,
    ReactionCounts,
    Reaction,
    Tag,
    TagRead,
    User,
    as_utc,
    utcnow,
)

logger = structlog.get_logger()

USER_SETTINGS_FIELDS = (
    "language", "notifications_enabled", "title",
    "age", "weight", "height", "fat_percentage", "goal", "gender",
)


STALE_CLAIM_AFTER = timedelta(minutes=15)


class Storage:
    """Repository for users, posts, tags, reactions and the bot message log."""

    def __init__(self, engine: Engine, stale_claim_after: timedelta = STALE_CLAIM_AFTER):
        self.engine = engine
        self.stale_claim_after = stale_claim_after

    @contextmanager
    def _session(self):
        session = Session(self.engine)
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            session.close()

    # --- Users ---

    def create_user(self, user: User) -> User:
        with self._session() as session:
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def get_user(self, user_id: int) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if not user:
                raise NotFound(f"user {user_id} not found")
            return user

    def get_user_by_chat_id(self, chat_id: int) -> User:
        with self._session() as session:
            user = session.exec(select(User).where(User.chat_id == chat_id)).first()
            if not user:
                raise NotFound(f"user with chat {chat_id} not found")
            return user

    def update_user(self, user_id: int, updates: dict) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if not user:
                raise NotFound(f"user {user_id} not found")
            for key, value in updates.items():
                if key in USER_SETTINGS_FIELDS:
                    setattr(user, key, value)
            user.updated_at = utcnow()
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def update_user_avatar(self, user_id: int, url: str):
        with self._session() as session:
            user = session.get(User, user_id)
            if not user:
                raise NotFound(f"user {user_id} not found")
            user.avatar_url = url
            session.add(user)
            session.commit()

    def request_to_join(self, user_id: int):
        with self._session() as session:
            user = session.get(User, user_id)
            if not user:
                raise NotFound(f"user {user_id} not found")
            user.requested_to_join_at = utcnow()
            session.add(user)
            session.commit()

    def delete_user(self, user_id: int):
        with self._session() as session:
            user = session.get(User, user_id)
            if not user:
                raise NotFound(f"user {user_id} not found")

            post_ids = session.exec(select(Post.id).where(Post.user_id == user_id)).all()

            for reaction in session.exec(select(Reaction).where(Reaction.user_id == user_id)).all():
                session.delete(reaction)
            if post_ids:
                for reaction in session.exec(select(Reaction).where(col(Reaction.post_id).in_(post_ids))).all():
                    session.delete(reaction)
                for link in session.exec(select(PostTag).where(col(PostTag.post_id).in_(post_ids))).all():
                    session.delete(link)
            for msg in session.exec(select(BotMessage).where(BotMessage.chat_id == user.chat_id)).all():
                session.delete(msg)
            session.flush()

            for post in session.exec(select(Post).where(Post.user_id == user_id)).all():
                session.delete(post)
            session.flush()

            session.delete(user)
            session.commit()
            logger.info("🗑️ User deleted", user_id=user_id, posts=len(post_ids))

    # --- Posts ---

    def create_post(self, user_id: int, photo_url: str, text: Optional[str] = None, hidden: bool = True) -> PostRead:
        with self._session() as session:
            post = Post(
                user_id=user_id,
                photo_url=photo_url,
                text=text,
                hidden_at=utcnow() if hidden else None,
            )
            session.add(post)
            session.commit()
            session.refresh(post)
            return self._post_read(session, post, viewer_id=user_id)

    def get_post(self, post_id: int, viewer_id: Optional[int] = None) -> PostRead:
        with self._session() as session:
            post = session.get(Post, post_id)
            if not post:
                raise NotFound(f"post {post_id} not found")
            return self._post_read(session, post, viewer_id=viewer_id)

    def list_feed(self, viewer_id: Optional[int] = None, limit: int = 100) -> List[PostRead]:
        """Shared, non-spam posts, newest first."""
        with self._session() as session:
            posts = session.exec(
                select(Post)
                .where(col(Post.hidden_at).is_(None))
                .where(Post.is_spam == False)  # noqa: E712
                .order_by(col(Post.created_at).desc(), col(Post.id).desc())
                .limit(limit)
            ).all()
            return [self._post_read(session, p, viewer_id=viewer_id) for p in posts]

    def list_user_posts(self, user_id: int, limit: int = 100) -> List[PostRead]:
        with self._session() as session:
            posts = session.exec(
                select(Post)
                .where(Post.user_id == user_id)
                .order_by(col(Post.created_at).desc(), col(Post.id).desc())
                .limit(limit)
            ).all()
            return [self._post_read(session, p, viewer_id=user_id) for p in posts]

    def list_posts_by_status(self, statuses: Sequence[str]) -> List[Tuple[int, int]]:
        """(post_id, user_id) pairs for posts whose enrichment is in one of `statuses`."""
        with self._session() as session:
            rows = session.exec(
                select(Post.id, Post.user_id)
                .where(col(Post.enrichment_status).in_(list(statuses)))
                .order_by(col(Post.id))
            ).all()
            return [(post_id, user_id) for post_id, user_id in rows]

    def update_post(
        self,
        user_id: int,
        post_id: int,
        text: Optional[str],
        photo_url: str,
        tag_ids: Optional[List[int]] = None,
    ) -> PostRead:
        """Edit a post and publish it; the tag set is replaced in the same transaction."""
        with self._session() as session:
            post = self._owned_post(session, user_id, post_id)
            post.text = text
            post.photo_url = photo_url
            post.hidden_at = None
            post.updated_at = utcnow()
            session.add(post)

            if tag_ids is not None:
                unique_ids = list(dict.fromkeys(tag_ids))
                known = session.exec(select(Tag.id).where(col(Tag.id).in_(unique_ids))).all()
                missing = set(unique_ids) - set(known)
                if missing:
                    raise ValidationError(f"unknown tag ids: {sorted(missing)}")
                self._replace_tags(session, post_id, unique_ids)

            session.commit()
            session.refresh(post)
            return self._post_read(session, post, viewer_id=user_id)

    def set_post_hidden(self, user_id: int, post_id: int, hidden: bool) -> PostRead:
        with self._session() as session:
            post = self._owned_post(session, user_id, post_id)
            post.hidden_at = utcnow() if hidden else None
            post.updated_at = utcnow()
            session.add(post)
            session.commit()
            session.refresh(post)
            return self._post_read(session, post, viewer_id=user_id)

    # --- Enrichment ---

    def claim_post_for_enrichment(self, user_id: int, post_id: int, force: bool = False) -> bool:
        """
        Move a post to PROCESSING.

        Returns False without touching the post when it already reached a
        terminal state or another run claimed it less than
        `stale_claim_after` ago, unless `force`. An older claim belongs to a
        run that died without reporting back and is taken over.
        """
        with self._session() as session:
            post = session.exec(
                select(Post).where(Post.id == post_id, Post.user_id == user_id).with_for_update()
            ).first()
            if not post:
                raise NotFound(f"post {post_id} not found for user {user_id}")

            if not force:
                if post.enrichment_status in EnrichmentStatus.TERMINAL:
                    return False
                if (
                    post.enrichment_status == EnrichmentStatus.PROCESSING
                    and as_utc(post.updated_at) > utcnow() - self.stale_claim_after
                ):
                    return False

            post.enrichment_status = EnrichmentStatus.PROCESSING
            post.updated_at = utcnow()
            session.add(post)
            session.commit()
            return True

    def list_stale_claims(self) -> List[Tuple[int, int]]:
        """(post_id, user_id) pairs stuck in PROCESSING longer than `stale_claim_after`."""
        cutoff = utcnow() - self.stale_claim_after
        with self._session() as session:
            rows = session.exec(
                select(Post.id, Post.user_id)
                .where(Post.enrichment_status == EnrichmentStatus.PROCESSING)
                .where(col(Post.updated_at) < cutoff)
                .order_by(col(Post.id))
            ).all()
            return [(post_id, user_id) for post_id, user_id in rows]

    def mark_post_spam(self, user_id: int, post_id: int) -> PostRead:
        """Classify a post as spam, dropping whatever an earlier run stored."""
        with self._session() as session:
            post = self._owned_post(session, user_id, post_id)
            post.is_spam = True
            post.dish_name = None
            post.ingredients = None
            post.food_insights = None
            post.health_rating = None
            post.aesthetic_rating = None
            post.enrichment_status = EnrichmentStatus.SPAM
            post.updated_at = utcnow()
            session.add(post)
            self._replace_tags(session, post_id, [])
            session.commit()
            session.refresh(post)
            return self._post_read(session, post, viewer_id=user_id)

    def save_enrichment(self, user_id: int, post_id: int, enrichment: Enrichment) -> PostRead:
        """Write the whole enrichment result, tags included, in one transaction."""
        with self._session() as session:
            post = self._owned_post(session, user_id, post_id)
            post.dish_name = enrichment.dish_name
            post.ingredients = encode_ingredients(enrichment.ingredients)
            post.food_insights = encode_food_insights(enrichment.food_insights)
            post.health_rating = enrichment.health_rating
            post.aesthetic_rating = enrichment.aesthetic_rating
            post.is_spam = False
            post.enrichment_status = EnrichmentStatus.ENRICHED
            post.updated_at = utcnow()
            session.add(post)

            tag_ids = self._get_or_create_tags(session, enrichment.tags, enrichment.language)
            self._replace_tags(session, post_id, tag_ids)

            session.commit()
            session.refresh(post)
            return self._post_read(session, post, viewer_id=user_id)

    def mark_enrichment_failed(self, user_id: int, post_id: int):
        with self._session() as session:
            post = self._owned_post(session, user_id, post_id)
            post.enrichment_status = EnrichmentStatus.FAILED
            session.add(post)
            session.commit()

    # --- Tags ---

    def list_tags(self, language: Optional[str] = None) -> List[Tag]:
        with self._session() as session:
            query = select(Tag).order_by(col(Tag.language), col(Tag.name))
            if language:
                query = query.where(Tag.language == language)
            return list(session.exec(query).all())

    def seed_tags(self):
        """Make sure every tag the recognizer may suggest exists."""
        with self._session() as session:
            for language, content in PROMPTS.items():
                self._get_or_create_tags(session, content.tags, language)
            session.commit()

    # --- Reactions ---

    def react_to_post(self, user_id: int, post_id: int, reaction: str):
        if reaction not in REACTION_TYPES:
            raise ValidationError(f"invalid reaction type: {reaction}")

        with self._session() as session:
            if not session.get(Post, post_id):
                raise NotFound(f"post {post_id} not found")

            existing = session.get(Reaction, {"user_id": user_id, "post_id": post_id})
            if existing:
                existing.type = reaction
                existing.created_at = utcnow()
                session.add(existing)
            else:
                session.add(Reaction(user_id=user_id, post_id=post_id, type=reaction))
            session.commit()

    def drop_reaction(self, user_id: int, post_id: int):
        with self._session() as session:
            existing = session.get(Reaction, {"user_id": user_id, "post_id": post_id})
            if not existing:
                raise NotFound(f"no reaction of user {user_id} on post {post_id}")
            session.delete(existing)
            session.commit()

    # --- Bot message log ---

    def record_sent_message(self, chat_id: int, entity_id: int, message_id: int):
        with self._session() as session:
            session.add(BotMessage(chat_id=chat_id, entity_id=entity_id, message_id=message_id))
            session.commit()

    def get_last_message_id(self, chat_id: int, entity_id: int) -> int:
        with self._session() as session:
            row = session.exec(
                select(BotMessage)
                .where(BotMessage.chat_id == chat_id, BotMessage.entity_id == entity_id)
                .order_by(col(BotMessage.sent_at).desc(), col(BotMessage.id).desc())
            ).first()
            if not row:
                raise NotFound(f"no message for chat {chat_id} and entity {entity_id}")
            return row.message_id

    # --- Helpers ---

    def _owned_post(self, session: Session, user_id: int, post_id: int) -> Post:
        post = session.exec(select(Post).where(Post.id == post_id, Post.user_id == user_id)).first()
        if not post:
            raise NotFound(f"post {post_id} not found for user {user_id}")
        return post

    def _get_or_create_tags(self, session: Session, names: Iterable[str], language: str) -> List[int]:
        ids = []
        for name in dict.fromkeys(n.strip() for n in names):
            if not name:
                continue
            tag = session.exec(select(Tag).where(Tag.name == name, Tag.language == language)).first()
            if not tag:
                tag = Tag(name=name, language=language)
                session.add(tag)
                session.flush()
            ids.append(tag.id)
        return ids

    def _replace_tags(self, session: Session, post_id: int, tag_ids: List[int]):
        for link in session.exec(select(PostTag).where(PostTag.post_id == post_id)).all():
            session.delete(link)
        session.flush()
        for tag_id in tag_ids:
            session.add(PostTag(post_id=post_id, tag_id=tag_id))

    def _post_read(self, session: Session, post: Post, viewer_id: Optional[int] = None) -> PostRead:
        tags = session.exec(
            select(Tag)
            .join(PostTag, col(PostTag.tag_id) == col(Tag.id))
            .where(PostTag.post_id == post.id)
            .order_by(col(Tag.name))
        ).all()

        reactions = session.exec(select(Reaction).where(Reaction.post_id == post.id)).all()
        counts = ReactionCounts()
        user_reaction = None
        for r in reactions:
            if r.type in REACTION_TYPES:
                setattr(counts, r.type, getattr(counts, r.type) + 1)
            if viewer_id is not None and r.user_id == viewer_id:
                user_reaction = r.type

        author = session.get(User, post.user_id)

        return PostRead(
            id=post.id,
            user_id=post.user_id,
            text=post.text,
            photo_url=post.photo_url,
            created_at=post.created_at,
            updated_at=post.updated_at,
            hidden_at=post.hidden_at,
            dish_name=post.dish_name,
            ingredients=decode_ingredients(post.ingredients),
            food_insights=decode_food_insights(post.food_insights),
            is_spam=post.is_spam,
            health_rating=post.health_rating,
            aesthetic_rating=post.aesthetic_rating,
            enrichment_status=post.enrichment_status,
            tags=[TagRead(id=t.id, name=t.name, language=t.language) for t in tags],
            reactions=counts,
            user_reaction=user_reaction,
            user=AuthorRead(
                id=author.id,
                username=author.username,
                avatar_url=author.avatar_url,
                first_name=author.first_name,
                last_name=author.last_name,
                title=author.title,
            ) if author else None,
        )

# eatsome/models.py
from typing import Optional, List
from datetime import datetime, timezone
from sqlmodel import Field, SQLModel
from sqlalchemy import BigInteger, Column, DateTime, Text, UniqueConstraint

REACTION_TYPES = ("smile", "meh", "frown")


class EnrichmentStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    SPAM = "spam"
    ENRICHED = "enriched"
    FAILED = "failed"

    TERMINAL = (SPAM, ENRICHED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands timestamps back naive; they are always stored in UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# --- Tables ---

class User(SQLModel, table=True):
    __tablename__ = "users"
    id: Optional[int] = Field(default=None, primary_key=True)
    chat_id: int = Field(sa_column=Column(BigInteger, unique=True, index=True, nullable=False))
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    language: str = Field(default="en")
    is_premium: bool = Field(default=False)
    notifications_enabled: bool = Field(default=True)
    avatar_url: Optional[str] = None
    title: Optional[str] = None

    age: Optional[int] = None
    weight: Optional[float] = None
    height: Optional[int] = None
    fat_percentage: Optional[float] = None
    goal: Optional[str] = None
    gender: Optional[str] = None

    requested_to_join_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    last_seen_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class Post(SQLModel, table=True):
    __tablename__ = "posts"
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    text: Optional[str] = None
    photo_url: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    hidden_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    # Filled in by the enrichment pipeline
    dish_name: Optional[str] = None
    ingredients: Optional[str] = Field(default=None, sa_column=Column(Text))
    food_insights: Optional[str] = Field(default=None, sa_column=Column(Text))
    is_spam: bool = Field(default=False)
    health_rating: Optional[int] = None
    aesthetic_rating: Optional[int] = None
    enrichment_status: str = Field(default=EnrichmentStatus.PENDING, index=True)


class Tag(SQLModel, table=True):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("name", "language"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    language: str = Field(default="en")
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class PostTag(SQLModel, table=True):
    __tablename__ = "post_tags"
    post_id: int = Field(foreign_key="posts.id", primary_key=True)
    tag_id: int = Field(foreign_key="tags.id", primary_key=True)


class Reaction(SQLModel, table=True):
    __tablename__ = "reactions"
    user_id: int = Field(foreign_key="users.id", primary_key=True)
    post_id: int = Field(foreign_key="posts.id", primary_key=True)
    type: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class BotMessage(SQLModel, table=True):
    """Append-only log of bot messages sent for a (chat, entity) pair."""
    __tablename__ = "bot_messages"
    id: Optional[int] = Field(default=None, primary_key=True)
    chat_id: int = Field(sa_column=Column(BigInteger, index=True, nullable=False))
    entity_id: int = Field(index=True)
    message_id: int
    sent_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


# --- AI results ---

class Macronutrients(SQLModel):
    proteins: float = 0.0
    fats: float = 0.0
    carbohydrates: float = 0.0


class Ingredient(SQLModel):
    name: str
    weight: float = 0.0
    calories: float = 0.0
    macronutrients: Macronutrients = Field(default_factory=Macronutrients)


class FoodInsights(SQLModel):
    calories: int = 0
    proteins: int = 0
    fats: int = 0
    carbohydrates: int = 0


class RecognizedIngredient(SQLModel):
    name: str
    amount: float


class ImageRecognition(SQLModel):
    spam: bool
    dish: str = ""
    tags: List[str] = Field(default=[])
    ingredients: List[RecognizedIngredient] = Field(default=[])
    health_rating: Optional[int] = None
    aesthetic_rating: Optional[int] = None


class NutritionInfo(SQLModel):
    ingredients: List[Ingredient] = Field(default=[])


class Enrichment(SQLModel):
    """Everything the pipeline writes for a post in its final update."""
    dish_name: str
    ingredients: List[Ingredient] = Field(default=[])
    food_insights: Optional[FoodInsights] = None
    tags: List[str] = Field(default=[])
    language: str = "en"
    health_rating: Optional[int] = None
    aesthetic_rating: Optional[int] = None


# --- Read models ---

class TagRead(SQLModel):
    id: int
    name: str
    language: str


class AuthorRead(SQLModel):
    id: int
    username: str
    avatar_url: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    title: Optional[str] = None


class ReactionCounts(SQLModel):
    smile: int = 0
    meh: int = 0
    frown: int = 0


class PostRead(SQLModel):
    id: int
    user_id: int
    text: Optional[str] = None
    photo_url: str
    created_at: datetime
    updated_at: datetime
    hidden_at: Optional[datetime] = None
    dish_name: Optional[str] = None
    ingredients: List[Ingredient] = Field(default=[])
    food_insights: Optional[FoodInsights] = None
    is_spam: bool = False
    health_rating: Optional[int] = None
    aesthetic_rating: Optional[int] = None
    enrichment_status: str = EnrichmentStatus.PENDING
    tags: List[TagRead] = Field(default=[])
    reactions: ReactionCounts = Field(default_factory=ReactionCounts)
    user_reaction: Optional[str] = None
    user: Optional[AuthorRead] = None

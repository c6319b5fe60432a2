"""
Persisted entities for the Pokify import service.

Rows are owned and mutated by the CRUD layer (pokify.layers.storage); the
extraction pipeline never touches them until the caller stores a result.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite does not keep tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    pass


class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"


class StorePlatform(str, Enum):
    SHOPIFY = "shopify"
    ALIEXPRESS = "aliexpress"
    OTHER = "other"


class ProductStatus(str, Enum):
    IMPORTED = "imported"
    EDITING = "editing"
    READY = "ready"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def _enum(enum_cls):
    # Stored as the lowercase value so rows stay readable in both SQLite and Postgres
    return SQLEnum(
        enum_cls,
        native_enum=False,
        values_callable=lambda members: [m.value for m in members],
        length=32,
    )


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(_enum(UserRole), default=UserRole.USER)
    billing_status: Mapped[str] = mapped_column(String(32), default="inactive")
    stores_limit: Mapped[int] = mapped_column(Integer, default=1)
    products_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    stores: Mapped[List["Store"]] = relationship(
        back_populates="owner", cascade="all, delete-orphan"
    )
    subscriptions: Mapped[List["Subscription"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    review_configs: Mapped[List["ReviewConfig"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


class PlanType(Base):
    __tablename__ = "plan_types"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100))
    stores_limit: Mapped[int] = mapped_column(Integer, default=1)
    products_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    price: Mapped[float] = mapped_column(Float, default=0.0)
    interval: Mapped[str] = mapped_column(String(16), default="month")  # month, year
    is_lifetime: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Subscription(Base):
    """One active subscription per user, kept by convention (not a constraint)."""
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    plan_type_id: Mapped[str] = mapped_column(ForeignKey("plan_types.id"))
    status: Mapped[str] = mapped_column(String(32), default="active")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    user: Mapped[User] = relationship(back_populates="subscriptions")
    plan_type: Mapped[PlanType] = relationship()


class Store(Base):
    __tablename__ = "stores"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(150))
    platform: Mapped[StorePlatform] = mapped_column(_enum(StorePlatform), default=StorePlatform.SHOPIFY)
    url: Mapped[str] = mapped_column(String(500))
    api_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    api_secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    api_version: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    products_count: Mapped[int] = mapped_column(Integer, default=0)
    orders_count: Mapped[int] = mapped_column(Integer, default=0)
    last_sync: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    owner: Mapped[User] = relationship(back_populates="stores")
    products: Mapped[List["Product"]] = relationship(
        back_populates="store", cascade="all, delete-orphan"
    )

    def to_dict(self) -> Dict[str, Any]:
        # Credentials never leave the server
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "platform": self.platform.value,
            "url": self.url,
            "api_version": self.api_version,
            "has_credentials": bool(self.api_key),
            "products_count": self.products_count,
            "orders_count": self.orders_count,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), index=True)
    title: Mapped[str] = mapped_column(String(500), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    compare_at_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="BRL")
    images: Mapped[List[str]] = mapped_column(JSON, default=list)
    variants: Mapped[List[str]] = mapped_column(JSON, default=list)
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    vendor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    product_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    stock: Mapped[int] = mapped_column(Integer, default=0)
    original_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    original_platform: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    shopify_product_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    shopify_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    status: Mapped[ProductStatus] = mapped_column(_enum(ProductStatus), default=ProductStatus.IMPORTED)
    reviews_count: Mapped[int] = mapped_column(Integer, default=0)
    average_rating: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    store: Mapped[Store] = relationship(back_populates="products")
    reviews: Mapped[List["Review"]] = relationship(
        back_populates="product", cascade="all, delete-orphan"
    )
    published_reviews: Mapped[Optional["PublishedReviewsJson"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", uselist=False
    )
    review_configs: Mapped[List["ReviewConfig"]] = relationship(
        back_populates="product", cascade="all, delete-orphan"
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "title": self.title,
            "description": self.description,
            "price": self.price,
            "compare_at_price": self.compare_at_price,
            "currency": self.currency,
            "images": list(self.images or []),
            "variants": list(self.variants or []),
            "tags": list(self.tags or []),
            "vendor": self.vendor,
            "product_type": self.product_type,
            "sku": self.sku,
            "stock": self.stock,
            "original_url": self.original_url,
            "original_platform": self.original_platform,
            "shopify_product_id": self.shopify_product_id,
            "shopify_url": self.shopify_url,
            "status": self.status.value,
            "reviews_count": self.reviews_count,
            "average_rating": self.average_rating,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Review(Base):
    __tablename__ = "reviews"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), index=True)
    author: Mapped[str] = mapped_column(String(255))
    rating: Mapped[int] = mapped_column(Integer)
    content: Mapped[str] = mapped_column(Text, default="")
    date: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    images: Mapped[List[str]] = mapped_column(JSON, default=list)
    is_selected: Mapped[bool] = mapped_column(Boolean, default=False)
    is_published: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    product: Mapped[Product] = relationship(back_populates="reviews")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author,
            "rating": self.rating,
            "content": self.content,
            "date": self.date.isoformat() if self.date else None,
            "images": list(self.images or []),
            "is_selected": self.is_selected,
            "is_published": self.is_published,
        }


class PublishedReviewsJson(Base):
    """Derived per-product snapshot served to public widgets without joins."""
    __tablename__ = "published_reviews_json"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    product_id: Mapped[str] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), unique=True, index=True
    )
    product_name: Mapped[str] = mapped_column(String(500), default="")
    product_image: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    average_rating: Mapped[float] = mapped_column(Float, default=0.0)
    total_reviews: Mapped[int] = mapped_column(Integer, default=0)
    reviews_data: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    product: Mapped[Product] = relationship(back_populates="published_reviews")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_image": self.product_image,
            "average_rating": self.average_rating,
            "total_reviews": self.total_reviews,
            "reviews": list(self.reviews_data or []),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ReviewConfig(Base):
    __tablename__ = "review_configs"
    __table_args__ = (UniqueConstraint("user_id", "product_id", name="uq_review_config_user_product"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), index=True)
    display_format: Mapped[str] = mapped_column(String(32), default="default")
    primary_color: Mapped[str] = mapped_column(String(16), default="#000000")
    secondary_color: Mapped[str] = mapped_column(String(16), default="#f5f5f5")
    position: Mapped[str] = mapped_column(String(32), default="after")
    custom_selector: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    show_images: Mapped[bool] = mapped_column(Boolean, default=True)
    show_dates: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    user: Mapped[User] = relationship(back_populates="review_configs")
    product: Mapped[Product] = relationship(back_populates="review_configs")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "product_id": self.product_id,
            "display_format": self.display_format,
            "primary_color": self.primary_color,
            "secondary_color": self.secondary_color,
            "position": self.position,
            "custom_selector": self.custom_selector,
            "show_images": self.show_images,
            "show_dates": self.show_dates,
        }


class ExtractionJob(Base):
    """Background extraction request tracked through queued -> running -> done."""
    __tablename__ = "extraction_jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    url: Mapped[str] = mapped_column(String(1000))
    mode: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    visual: Mapped[bool] = mapped_column(Boolean, default=False)
    store_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[JobStatus] = mapped_column(_enum(JobStatus), default=JobStatus.QUEUED)
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.id,
            "url": self.url,
            "mode": self.mode,
            "visual": self.visual,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }

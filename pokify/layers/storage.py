"""
CRUD layer for the Pokify import service.

One function per table operation, each taking the session first. Writes
commit immediately; concurrent writers follow last-write-wins.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pokify.errors import LimitExceededError, NotFoundError, PersistenceError, ValidationFailure
from pokify.models.entities import (
    PlanType,
    Product,
    ProductStatus,
    PublishedReviewsJson,
    Review,
    ReviewConfig,
    Store,
    StorePlatform,
    Subscription,
    User,
    utcnow,
)
from pokify.models.product import ProductData
from pokify.utils.logger import LayerLogger


logger = LayerLogger("storage")

PRODUCT_FIELDS = {
    "title", "description", "price", "compare_at_price", "currency", "images",
    "variants", "tags", "vendor", "product_type", "sku", "stock", "status",
    "original_url", "original_platform", "shopify_product_id", "shopify_url",
}
STORE_FIELDS = {"name", "platform", "url", "api_key", "api_secret", "api_version"}
REVIEW_CONFIG_FIELDS = {
    "display_format", "primary_color", "secondary_color", "position",
    "custom_selector", "show_images", "show_dates",
}


def commit(session: Session, action: str, **extra):
    """Commit or roll back and raise PersistenceError."""
    try:
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.log_error(f"Database write failed: {str(e)}", error_type="persistence_error", action=action, **extra)
        raise PersistenceError(f"Database write failed during {action}")


def _get_or_404(session: Session, model, row_id: str, label: str):
    row = session.get(model, row_id)
    if row is None:
        raise NotFoundError(f"{label} not found", detail={"id": row_id})
    return row


def _to_float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationFailure(f"Invalid price: {value}")


# Users

def create_user(
    session: Session,
    email: str,
    name: Optional[str] = None,
    user_id: Optional[str] = None,
    **fields,
) -> User:
    user = User(email=email, name=name, **fields)
    if user_id:
        user.id = user_id
    session.add(user)
    commit(session, "create_user")
    logger.log_action("create_user", "completed", user_id=user.id)
    return user


def get_user(session: Session, user_id: str) -> User:
    return _get_or_404(session, User, user_id, "User")


# Billing

def create_plan_type(
    session: Session,
    name: str,
    stores_limit: int = 1,
    products_limit: Optional[int] = None,
    price: float = 0.0,
    interval: str = "month",
    is_lifetime: bool = False,
) -> PlanType:
    plan = PlanType(
        name=name,
        stores_limit=stores_limit,
        products_limit=products_limit,
        price=price,
        interval=interval,
        is_lifetime=is_lifetime,
    )
    session.add(plan)
    commit(session, "create_plan_type")
    return plan


def get_active_subscription(session: Session, user_id: str) -> Optional[Subscription]:
    """Most recent active subscription, if any."""
    stmt = (
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.is_active.is_(True))
        .order_by(Subscription.started_at.desc())
        .limit(1)
    )
    return session.scalars(stmt).first()


def create_subscription(
    session: Session,
    user_id: str,
    plan_type_id: str,
    expires_at: Optional[datetime] = None,
) -> Subscription:
    """Start a subscription, deactivating any active one first."""
    user = get_user(session, user_id)
    plan = _get_or_404(session, PlanType, plan_type_id, "Plan type")

    session.execute(
        update(Subscription)
        .where(Subscription.user_id == user_id, Subscription.is_active.is_(True))
        .values(is_active=False, status="replaced")
    )

    subscription = Subscription(
        user_id=user_id,
        plan_type_id=plan_type_id,
        expires_at=None if plan.is_lifetime else expires_at,
    )
    session.add(subscription)

    user.billing_status = "active"
    user.stores_limit = plan.stores_limit
    user.products_limit = plan.products_limit

    commit(session, "create_subscription", user_id=user_id)
    logger.log_action("create_subscription", "completed", user_id=user_id, plan=plan.name)
    return subscription


def get_stores_limit(session: Session, user_id: str) -> int:
    """Stores allowed by the active plan, else the user's own limit."""
    subscription = get_active_subscription(session, user_id)
    if subscription is not None:
        return subscription.plan_type.stores_limit
    return get_user(session, user_id).stores_limit


# Stores

def create_store(
    session: Session,
    user_id: str,
    name: str,
    url: str,
    platform: StorePlatform = StorePlatform.SHOPIFY,
    api_key: Optional[str] = None,
    api_secret: Optional[str] = None,
    api_version: Optional[str] = None,
) -> Store:
    """
    Create a store for ``user_id``.

    Raises:
        LimitExceededError: the owner already has as many stores as allowed
    """
    get_user(session, user_id)
    limit = get_stores_limit(session, user_id)
    existing = len(list_stores(session, user_id))
    if existing >= limit:
        logger.log_decision(
            decision="reject_store",
            reason="stores limit reached",
            user_id=user_id,
            limit=limit,
            existing=existing,
        )
        raise LimitExceededError(
            f"Stores limit reached ({limit})",
            detail={"limit": limit, "current": existing},
        )

    store = Store(
        user_id=user_id,
        name=name,
        url=url,
        platform=StorePlatform(platform),
        api_key=api_key,
        api_secret=api_secret,
        api_version=api_version,
    )
    session.add(store)
    commit(session, "create_store", user_id=user_id)
    logger.log_action("create_store", "completed", store_id=store.id, platform=store.platform.value)
    return store


def get_store(session: Session, store_id: str) -> Store:
    return _get_or_404(session, Store, store_id, "Store")


def list_stores(session: Session, user_id: str) -> List[Store]:
    stmt = select(Store).where(Store.user_id == user_id).order_by(Store.created_at)
    return list(session.scalars(stmt))


def update_store(session: Session, store_id: str, **fields) -> Store:
    store = get_store(session, store_id)
    for key, value in fields.items():
        if key not in STORE_FIELDS:
            raise ValidationFailure(f"Unknown store field: {key}")
        if key == "platform":
            value = StorePlatform(value)
        setattr(store, key, value)
    commit(session, "update_store", store_id=store_id)
    return store


def touch_store_sync(session: Session, store_id: str) -> Store:
    store = get_store(session, store_id)
    store.last_sync = utcnow()
    commit(session, "touch_store_sync", store_id=store_id)
    return store


# Products

def create_product(session: Session, store_id: str, **fields) -> Product:
    """Create a product and bump the store's product counter."""
    store = get_store(session, store_id)
    unknown = set(fields) - PRODUCT_FIELDS
    if unknown:
        raise ValidationFailure(f"Unknown product fields: {', '.join(sorted(unknown))}")

    for key in ("price", "compare_at_price"):
        if key in fields:
            fields[key] = _to_float(fields[key])
    if "status" in fields:
        fields["status"] = ProductStatus(fields["status"])

    product = Product(store=store, **fields)
    session.add(product)
    store.products_count = (store.products_count or 0) + 1

    commit(session, "create_product", store_id=store_id)
    logger.log_action("create_product", "completed", product_id=product.id, store_id=store_id)
    return product


def get_product(session: Session, product_id: str) -> Product:
    return _get_or_404(session, Product, product_id, "Product")


def list_products(
    session: Session,
    store_id: str,
    status: Optional[ProductStatus] = None,
) -> List[Product]:
    stmt = select(Product).where(Product.store_id == store_id)
    if status is not None:
        stmt = stmt.where(Product.status == ProductStatus(status))
    return list(session.scalars(stmt.order_by(Product.created_at.desc())))


def update_product(session: Session, product_id: str, **fields) -> Product:
    product = get_product(session, product_id)
    for key, value in fields.items():
        if key not in PRODUCT_FIELDS:
            raise ValidationFailure(f"Unknown product field: {key}")
        if key in ("price", "compare_at_price"):
            value = _to_float(value)
        elif key == "status":
            value = ProductStatus(value)
        setattr(product, key, value)
    commit(session, "update_product", product_id=product_id)
    return product


def delete_product(session: Session, product_id: str):
    product = get_product(session, product_id)
    store = product.store
    session.delete(product)
    if store is not None and store.products_count:
        store.products_count -= 1
    commit(session, "delete_product", product_id=product_id)
    logger.log_action("delete_product", "completed", product_id=product_id)


def save_extracted_product(session: Session, store_id: str, data: ProductData) -> Product:
    """Persist an extraction result as an ``imported`` product."""
    return create_product(
        session,
        store_id,
        title=data.title,
        description=data.description,
        price=data.price or None,
        compare_at_price=data.original_price or None,
        currency=data.currency or "BRL",
        images=list(data.images),
        variants=list(data.variants),
        original_url=data.url,
        original_platform="shopify" if any("/cdn/shop/" in i for i in data.images) else "other",
        status=ProductStatus.IMPORTED,
    )


# Reviews

def _refresh_review_aggregates(session: Session, product: Product):
    ratings = list(session.scalars(select(Review.rating).where(Review.product_id == product.id)))
    product.reviews_count = len(ratings)
    product.average_rating = round(sum(ratings) / len(ratings), 1) if ratings else 0.0


def create_review(
    session: Session,
    product_id: str,
    author: str,
    rating: int,
    content: str = "",
    date: Optional[datetime] = None,
    images: Optional[List[str]] = None,
    is_selected: bool = False,
    is_published: bool = False,
) -> Review:
    if not 1 <= int(rating) <= 5:
        raise ValidationFailure("Rating must be between 1 and 5")
    product = get_product(session, product_id)

    review = Review(
        product=product,
        author=author,
        rating=int(rating),
        content=content,
        images=list(images or []),
        is_selected=is_selected,
        is_published=is_published,
    )
    if date is not None:
        review.date = date
    session.add(review)
    session.flush()
    _refresh_review_aggregates(session, product)
    commit(session, "create_review", product_id=product_id)
    return review


def list_reviews(session: Session, product_id: str) -> List[Review]:
    stmt = select(Review).where(Review.product_id == product_id).order_by(Review.date.desc())
    return list(session.scalars(stmt))


def get_review(session: Session, review_id: str) -> Review:
    return _get_or_404(session, Review, review_id, "Review")


def update_review_flags(
    session: Session,
    review_id: str,
    is_selected: Optional[bool] = None,
    is_published: Optional[bool] = None,
) -> Review:
    review = get_review(session, review_id)
    if is_selected is not None:
        review.is_selected = is_selected
    if is_published is not None:
        review.is_published = is_published
    commit(session, "update_review_flags", review_id=review_id)
    return review


def update_review_content(
    session: Session,
    review_id: str,
    content: Optional[str] = None,
    author: Optional[str] = None,
    rating: Optional[int] = None,
) -> Review:
    review = get_review(session, review_id)
    if content is not None:
        review.content = content
    if author is not None:
        review.author = author
    if rating is not None:
        if not 1 <= int(rating) <= 5:
            raise ValidationFailure("Rating must be between 1 and 5")
        review.rating = int(rating)
        session.flush()
        _refresh_review_aggregates(session, review.product)
    commit(session, "update_review_content", review_id=review_id)
    return review


def delete_review(session: Session, review_id: str):
    review = get_review(session, review_id)
    product = review.product
    session.delete(review)
    session.flush()
    _refresh_review_aggregates(session, product)
    commit(session, "delete_review", review_id=review_id)


def rebuild_published_reviews(session: Session, product_id: str) -> PublishedReviewsJson:
    """
    Rebuild the public snapshot for a product.

    Only reviews both selected and published are included, newest first.
    The snapshot row is upserted; there is never more than one per product.
    """
    product = get_product(session, product_id)
    stmt = (
        select(Review)
        .where(
            Review.product_id == product_id,
            Review.is_selected.is_(True),
            Review.is_published.is_(True),
        )
        .order_by(Review.date.desc())
    )
    reviews = list(session.scalars(stmt))

    total = len(reviews)
    average = round(sum(r.rating for r in reviews) / total, 1) if total else 0.0

    snapshot = session.scalars(
        select(PublishedReviewsJson).where(PublishedReviewsJson.product_id == product_id)
    ).first()
    if snapshot is None:
        snapshot = PublishedReviewsJson(product_id=product_id)
        session.add(snapshot)

    snapshot.product_name = product.title
    snapshot.product_image = (product.images or [None])[0]
    snapshot.average_rating = average
    snapshot.total_reviews = total
    snapshot.reviews_data = [r.to_dict() for r in reviews]
    snapshot.updated_at = utcnow()

    commit(session, "rebuild_published_reviews", product_id=product_id)
    logger.log_action(
        "rebuild_published_reviews",
        "completed",
        product_id=product_id,
        total_reviews=total,
        average_rating=average,
    )
    return snapshot


def get_published_reviews(session: Session, product_id: str) -> PublishedReviewsJson:
    snapshot = session.scalars(
        select(PublishedReviewsJson).where(PublishedReviewsJson.product_id == product_id)
    ).first()
    if snapshot is None:
        raise NotFoundError("No published reviews for product", detail={"product_id": product_id})
    return snapshot


# Review widget configuration

def upsert_review_config(session: Session, user_id: str, product_id: str, **fields) -> ReviewConfig:
    get_user(session, user_id)
    get_product(session, product_id)

    unknown = set(fields) - REVIEW_CONFIG_FIELDS
    if unknown:
        raise ValidationFailure(f"Unknown review config fields: {', '.join(sorted(unknown))}")

    config = get_review_config(session, user_id, product_id)
    if config is None:
        config = ReviewConfig(user_id=user_id, product_id=product_id)
        session.add(config)
    for key, value in fields.items():
        if value is not None:
            setattr(config, key, value)

    commit(session, "upsert_review_config", user_id=user_id, product_id=product_id)
    return config


def get_review_config(
    session: Session,
    user_id: Optional[str],
    product_id: str,
) -> Optional[ReviewConfig]:
    """Config for (user, product); without a user, any config for the product."""
    stmt = select(ReviewConfig).where(ReviewConfig.product_id == product_id)
    if user_id:
        stmt = stmt.where(ReviewConfig.user_id == user_id)
    return session.scalars(stmt.order_by(ReviewConfig.updated_at.desc())).first()


# Account

def delete_user_account(session: Session, user_id: str) -> Dict[str, int]:
    """Delete a user and everything they own."""
    # Collections may be stale after earlier commits in this session
    session.expire_all()
    user = get_user(session, user_id)
    counts = {
        "stores": len(user.stores),
        "products": sum(len(s.products) for s in user.stores),
        "reviews": sum(len(p.reviews) for s in user.stores for p in s.products),
    }
    session.delete(user)
    commit(session, "delete_user_account", user_id=user_id)
    logger.log_action("delete_user_account", "completed", user_id=user_id, **counts)
    return counts

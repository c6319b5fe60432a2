"""
Pokify Import Service - FastAPI Application
Main entry point with REST API endpoints.
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

import httpx
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from playwright.async_api import Error as PlaywrightError
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from pokify import __version__
from pokify.adapters import (
    BrowserPool,
    ClaudeClient,
    HTMLScraper,
    LinkfyAdapter,
    ScreenshotCapturer,
    ShopifyAdapter,
    VisionExtractor,
)
from pokify.config import Config, config
from pokify.database import Database, get_session, init_database
from pokify.errors import (
    NotFoundError,
    PokifyError,
    ServiceUnavailable,
    UpstreamServiceError,
    ValidationFailure,
)
from pokify.generators.inject_script import InjectScriptGenerator
from pokify.generators.reviews_widget import ReviewsWidgetGenerator
from pokify.layers import storage
from pokify.layers.ai_enhancement import AIEnhancementLayer, detect_language, language_name
from pokify.layers.extraction import ExtractionLayer
from pokify.layers.jobs import JobQueue
from pokify.models.entities import ProductStatus, StorePlatform
from pokify.models.product import ExtractionResult
from pokify.utils.logger import get_logger, get_trace_id, set_trace_id


logger = get_logger("main")


class Services:
    """Adapters and layers shared by all requests."""

    def __init__(
        self,
        database: Database,
        extraction: ExtractionLayer,
        ai: AIEnhancementLayer,
        shopify: ShopifyAdapter,
        capturer: ScreenshotCapturer,
        browser_pool: BrowserPool,
        jobs: JobQueue,
        public_base_url: str,
    ):
        self.database = database
        self.extraction = extraction
        self.ai = ai
        self.shopify = shopify
        self.capturer = capturer
        self.browser_pool = browser_pool
        self.jobs = jobs
        self.public_base_url = public_base_url
        self.widget = ReviewsWidgetGenerator()
        self.inject_script = InjectScriptGenerator()


def build_services(
    cfg: Config,
    claude: Optional[ClaudeClient] = None,
    browser_pool: Optional[BrowserPool] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    """Wire adapters and layers from configuration."""
    database = init_database(cfg.DATABASE_URL)
    claude = claude or ClaudeClient(api_key=cfg.CLAUDE_API_KEY)
    browser_pool = browser_pool or BrowserPool(max_contexts=cfg.SCREENSHOT_MAX_CONTEXTS)
    capturer = ScreenshotCapturer(browser_pool)

    extraction = ExtractionLayer(
        linkfy=LinkfyAdapter(
            api_url=cfg.LINKFY_API_URL,
            api_token=cfg.LINKFY_API_TOKEN,
            legacy_api_token=cfg.LINKFY_LEGACY_API_TOKEN,
            timeout=cfg.REQUEST_TIMEOUT,
            transport=transport,
        ),
        scraper=HTMLScraper(timeout=cfg.REQUEST_TIMEOUT, transport=transport),
        vision=VisionExtractor(claude),
        capturer=capturer,
        use_new_extractor=cfg.USE_NEW_EXTRACTOR,
        budget_seconds=cfg.EXTRACTION_BUDGET_SECONDS,
    )

    return Services(
        database=database,
        extraction=extraction,
        ai=AIEnhancementLayer(claude),
        shopify=ShopifyAdapter(api_version=cfg.SHOPIFY_API_VERSION, timeout=cfg.REQUEST_TIMEOUT, transport=transport),
        capturer=capturer,
        browser_pool=browser_pool,
        jobs=JobQueue(database.session_factory, extraction.extract, workers=cfg.JOB_WORKERS),
        public_base_url=cfg.PUBLIC_BASE_URL,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests install their own services before startup
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(config)
    services: Services = app.state.services

    missing = config.get_missing_vars()
    if missing:
        logger.warning("configuration_incomplete", missing=missing)

    services.jobs.start()
    logger.info("startup_complete", version=__version__)
    try:
        yield
    finally:
        await services.jobs.stop()
        await services.browser_pool.close()
        logger.info("shutdown_complete")


# Initialize FastAPI app
app = FastAPI(
    title="Pokify Import Service",
    description="Imports products from arbitrary store pages and publishes them to Shopify",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def trace_requests(request: Request, call_next):
    trace_id = set_trace_id()
    response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = f"Missing or invalid field: {field}" if field else "Invalid request"
    logger.info("request_rejected", path=request.url.path, error=message)
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(PokifyError)
async def pokify_error_handler(request: Request, exc: PokifyError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message, **exc.detail)
    content: Dict[str, Any] = {"error": exc.message}
    if exc.detail:
        content["detail"] = exc.detail
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("request_failed", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def get_services(request: Request) -> Services:
    return request.app.state.services


# Request models

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ExtractRequest(CamelModel):
    url: str
    screenshot: Optional[str] = None
    visual: bool = False
    mode: Optional[Literal["standard", "pro_copy"]] = None
    store_id: Optional[str] = Field(default=None, alias="storeId")


class VisionExtractRequest(CamelModel):
    url: str
    screenshot: str
    mode: Optional[Literal["standard", "pro_copy"]] = None


class ScreenshotRequest(BaseModel):
    url: str


class ImproveDescriptionRequest(CamelModel):
    product_id: Optional[str] = Field(default=None, alias="productId")
    title: str = ""
    description: str


class ReviewItem(BaseModel):
    id: Optional[str] = None
    content: str = ""
    author: Optional[str] = None
    rating: Optional[int] = None


class EnhanceReviewsRequest(CamelModel):
    reviews: List[ReviewItem]
    product_name: Optional[str] = Field(default=None, alias="productName")


class GenerateReviewsRequest(CamelModel):
    product_id: str = Field(alias="productId")
    count: int = 5
    language: str = "pt"
    min_rating: int = Field(default=3, alias="minRating")
    max_rating: int = Field(default=5, alias="maxRating")


class TranslateRequest(CamelModel):
    text: str
    target_language: str = Field(alias="targetLanguage")
    source_language: Optional[str] = Field(default=None, alias="sourceLanguage")


class DetectLanguageRequest(BaseModel):
    text: str


class TranslateBatchRequest(CamelModel):
    texts: List[str]
    target_language: str = Field(alias="targetLanguage")


class TranslateReviewsRequest(CamelModel):
    reviews: List[ReviewItem]
    target_language: str = Field(alias="targetLanguage")


class VerifyCredentialsRequest(BaseModel):
    url: str
    api_key: str


class PublishProductRequest(CamelModel):
    product_id: str = Field(alias="productId")
    include_reviews: bool = Field(default=False, alias="includeReviews")


class UpdateShopifyProductRequest(CamelModel):
    include_reviews: bool = Field(default=False, alias="includeReviews")


class CreateUserRequest(BaseModel):
    email: str
    name: Optional[str] = None


class CreateStoreRequest(CamelModel):
    user_id: str = Field(alias="userId")
    name: str
    url: str
    platform: StorePlatform = StorePlatform.SHOPIFY
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    api_secret: Optional[str] = Field(default=None, alias="apiSecret")
    api_version: Optional[str] = Field(default=None, alias="apiVersion")


class ProductUpdate(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    compare_at_price: Optional[float] = Field(default=None, alias="compareAtPrice")
    currency: Optional[str] = None
    images: Optional[List[str]] = None
    variants: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = Field(default=None, alias="productType")
    sku: Optional[str] = None
    stock: Optional[int] = None
    status: Optional[ProductStatus] = None


class CreateReviewRequest(BaseModel):
    author: str
    rating: int
    content: str = ""
    date: Optional[datetime] = None
    images: List[str] = Field(default_factory=list)
    is_selected: bool = False
    is_published: bool = False


class ReviewUpdate(BaseModel):
    author: Optional[str] = None
    rating: Optional[int] = None
    content: Optional[str] = None
    is_selected: Optional[bool] = None
    is_published: Optional[bool] = None


class ReviewConfigRequest(CamelModel):
    user_id: str = Field(alias="userId")
    product_id: str = Field(alias="productId")
    display_format: Optional[Literal["default", "stars", "compact", "detailed", "minimal"]] = Field(
        default=None, alias="displayFormat"
    )
    primary_color: Optional[str] = Field(default=None, alias="primaryColor")
    secondary_color: Optional[str] = Field(default=None, alias="secondaryColor")
    position: Optional[str] = None
    custom_selector: Optional[str] = Field(default=None, alias="customSelector")
    show_images: Optional[bool] = Field(default=None, alias="showImages")
    show_dates: Optional[bool] = Field(default=None, alias="showDates")


def _require_http_url(url: str):
    if not url.startswith(("http://", "https://")):
        raise ValidationFailure("URL must start with http:// or https://")


def _extraction_response(result: ExtractionResult, **extra) -> JSONResponse:
    body: Dict[str, Any] = {
        "success": result.success,
        "source": result.source.value if result.source else None,
        "used_screenshot": result.used_screenshot,
        "ai_extracted": result.ai_extracted,
        "processing_time_ms": result.processing_time_ms,
        "trace_id": get_trace_id(),
    }
    if result.success:
        body["data"] = result.data.model_dump()
        body.update(extra)
        return JSONResponse(content=body)

    body["error"] = result.error or "Extraction failed"
    body["attempts"] = result.attempts
    return JSONResponse(status_code=500, content=body)


# API Routes
@app.get("/api/health")
async def health_check(services: Services = Depends(get_services)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "integrations": {
            "llm": services.ai.is_available(),
            "linkfy": config.is_linkfy_configured(),
        },
    }


# Extraction

@app.post("/api/product/extract")
async def extract_product(
    request: ExtractRequest,
    services: Services = Depends(get_services),
    session: Session = Depends(get_session),
):
    """
    Extract a product from a store page.

    With ``storeId`` the extracted product is saved as ``imported``; an
    unknown store is rejected before any extraction work starts.
    """
    _require_http_url(request.url)
    if request.store_id:
        await asyncio.to_thread(storage.get_store, session, request.store_id)
    logger.info("product_extract_request", url=request.url, visual=request.visual, mode=request.mode)

    result = await services.extraction.extract(
        request.url,
        visual=request.visual,
        screenshot=request.screenshot,
        mode=request.mode,
    )

    extra: Dict[str, Any] = {}
    if result.success and request.store_id:
        product = await asyncio.to_thread(
            storage.save_extracted_product, session, request.store_id, result.data
        )
        extra["productId"] = product.id
    return _extraction_response(result, **extra)


@app.post("/api/products/extract-vision")
async def extract_product_vision(
    request: VisionExtractRequest,
    services: Services = Depends(get_services),
):
    """Extract a product with a caller-supplied screenshot."""
    _require_http_url(request.url)
    if not request.screenshot:
        raise ValidationFailure("Screenshot is required")
    if not services.extraction.vision.is_available():
        raise ServiceUnavailable("AI service is not configured")

    result = await services.extraction.extract(
        request.url, screenshot=request.screenshot, mode=request.mode
    )
    return _extraction_response(result)


@app.post("/api/screenshot")
async def capture_screenshot(
    request: ScreenshotRequest,
    services: Services = Depends(get_services),
):
    _require_http_url(request.url)
    try:
        captured = await services.capturer.capture_with_meta(request.url)
    except (PlaywrightError, OSError) as e:
        raise UpstreamServiceError(f"Screenshot capture failed: {str(e)}")
    return {"success": True, "screenshot": captured.screenshot, "meta": captured.meta}


@app.post("/api/trigger/extract")
async def trigger_extract(
    request: ExtractRequest,
    services: Services = Depends(get_services),
):
    """Queue an extraction and return its job id for polling."""
    _require_http_url(request.url)
    job = await services.jobs.submit(
        request.url, mode=request.mode, visual=request.visual, store_id=request.store_id
    )
    return {"jobId": job.id, "status": job.status.value}


@app.get("/api/products/extract-job-status")
def extract_job_status(
    job_id: str = Query(..., alias="jobId"),
    services: Services = Depends(get_services),
):
    return services.jobs.status(job_id).to_dict()


# AI content

@app.post("/api/improve-description")
async def improve_description(
    request: ImproveDescriptionRequest,
    services: Services = Depends(get_services),
    session: Session = Depends(get_session),
):
    if request.product_id:
        await asyncio.to_thread(storage.get_product, session, request.product_id)

    improved = await services.ai.improve_description(request.title, request.description)

    if request.product_id:
        await asyncio.to_thread(storage.update_product, session, request.product_id, description=improved)
    return {"success": True, "description": improved}


@app.post("/api/reviews/enhance")
async def enhance_reviews(
    request: EnhanceReviewsRequest,
    services: Services = Depends(get_services),
):
    results = await services.ai.enhance_reviews(
        [r.model_dump() for r in request.reviews], product_name=request.product_name
    )
    return {"success": True, "results": results}


@app.post("/api/reviews/generate")
async def generate_reviews(
    request: GenerateReviewsRequest,
    services: Services = Depends(get_services),
    session: Session = Depends(get_session),
):
    product = await asyncio.to_thread(storage.get_product, session, request.product_id)
    generated = await services.ai.generate_reviews(
        product.title,
        product.description,
        count=request.count,
        language=request.language,
        min_rating=request.min_rating,
        max_rating=request.max_rating,
    )

    def save_all() -> List[Dict[str, Any]]:
        saved = []
        for item in generated:
            try:
                review_date = datetime.fromisoformat(item["date"])
            except ValueError:
                review_date = None
            review = storage.create_review(
                session,
                product.id,
                author=item["author"],
                rating=item["rating"],
                content=item["content"],
                date=review_date,
            )
            saved.append(review.to_dict())
        return saved

    return {"success": True, "reviews": await asyncio.to_thread(save_all)}


@app.post("/api/translate")
async def translate(request: TranslateRequest, services: Services = Depends(get_services)):
    translated = await services.ai.translate(
        request.text, request.target_language, source_language=request.source_language
    )
    return {"success": True, "translated": translated}


@app.post("/api/translate/detect")
async def translate_detect(request: DetectLanguageRequest):
    code = detect_language(request.text)
    return {"success": True, "language": code, "name": language_name(code)}


@app.post("/api/translate/batch")
async def translate_batch(request: TranslateBatchRequest, services: Services = Depends(get_services)):
    results = await services.ai.translate_batch(request.texts, request.target_language)
    return {"success": True, "results": results}


@app.post("/api/translate/reviews")
async def translate_reviews(request: TranslateReviewsRequest, services: Services = Depends(get_services)):
    results = await services.ai.translate_reviews(
        [r.model_dump() for r in request.reviews], request.target_language
    )
    return {"success": True, "results": results}


# Shopify

def _load_for_shopify(session: Session, product_id: str, include_reviews: bool):
    """Product, owning store and (optionally) reviews, loaded in one blocking step."""
    product = storage.get_product(session, product_id)
    reviews = storage.list_reviews(session, product.id) if include_reviews else None
    return product, product.store, reviews


@app.post("/api/shopify/verify-credentials")
async def verify_shopify_credentials(
    request: VerifyCredentialsRequest,
    services: Services = Depends(get_services),
):
    return await services.shopify.verify_credentials(request.url, request.api_key)


@app.post("/api/shopify/publish-product")
async def publish_shopify_product(
    request: PublishProductRequest,
    services: Services = Depends(get_services),
    session: Session = Depends(get_session),
):
    """Create the product in the owning store and mark it published."""
    product, store, reviews = await asyncio.to_thread(
        _load_for_shopify, session, request.product_id, request.include_reviews
    )

    result = await services.shopify.publish_product(store, product, reviews)
    if not result["success"]:
        raise UpstreamServiceError(result["error"], detail={"product_id": product.id})

    def mark_published():
        storage.update_product(
            session,
            product.id,
            shopify_product_id=result["shopify_product_id"],
            shopify_url=result["product_url"],
            status=ProductStatus.PUBLISHED,
        )
        storage.touch_store_sync(session, store.id)

    await asyncio.to_thread(mark_published)
    return result


@app.post("/api/shopify/update-product/{product_id}")
async def update_shopify_product(
    product_id: str,
    request: Optional[UpdateShopifyProductRequest] = None,
    services: Services = Depends(get_services),
    session: Session = Depends(get_session),
):
    include_reviews = request.include_reviews if request else False
    product, store, reviews = await asyncio.to_thread(_load_for_shopify, session, product_id, include_reviews)
    if not product.shopify_product_id:
        raise ValidationFailure("Product has not been published to Shopify yet")

    result = await services.shopify.update_product(store, product.shopify_product_id, product, reviews)
    if not result["success"]:
        raise UpstreamServiceError(result["error"], detail={"product_id": product.id})

    def mark_synced():
        if result.get("product_url"):
            storage.update_product(session, product.id, shopify_url=result["product_url"])
        storage.touch_store_sync(session, store.id)

    await asyncio.to_thread(mark_synced)
    return result


# Users and stores

@app.post("/api/users")
def create_user(request: CreateUserRequest, session: Session = Depends(get_session)):
    user = storage.create_user(session, request.email, name=request.name)
    return {"id": user.id, "email": user.email, "name": user.name}


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, session: Session = Depends(get_session)):
    counts = storage.delete_user_account(session, user_id)
    return {"success": True, "deleted": counts}


@app.post("/api/stores")
def create_store(request: CreateStoreRequest, session: Session = Depends(get_session)):
    store = storage.create_store(
        session,
        request.user_id,
        name=request.name,
        url=request.url,
        platform=request.platform,
        api_key=request.api_key,
        api_secret=request.api_secret,
        api_version=request.api_version,
    )
    return store.to_dict()


@app.get("/api/stores/{store_id}")
def get_store(store_id: str, session: Session = Depends(get_session)):
    return storage.get_store(session, store_id).to_dict()


@app.get("/api/stores/{store_id}/products")
def list_store_products(
    store_id: str,
    status: Optional[ProductStatus] = None,
    session: Session = Depends(get_session),
):
    storage.get_store(session, store_id)
    return {"products": [p.to_dict() for p in storage.list_products(session, store_id, status)]}


# Products

@app.get("/api/products/{product_id}")
def get_product(product_id: str, session: Session = Depends(get_session)):
    return storage.get_product(session, product_id).to_dict()


@app.patch("/api/products/{product_id}")
def update_product(
    product_id: str,
    request: ProductUpdate,
    session: Session = Depends(get_session),
):
    fields = request.model_dump(exclude_unset=True)
    return storage.update_product(session, product_id, **fields).to_dict()


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, session: Session = Depends(get_session)):
    storage.delete_product(session, product_id)
    return {"success": True}


# Reviews

@app.get("/api/products/{product_id}/reviews")
def list_product_reviews(product_id: str, session: Session = Depends(get_session)):
    storage.get_product(session, product_id)
    return {"reviews": [r.to_dict() for r in storage.list_reviews(session, product_id)]}


@app.post("/api/products/{product_id}/reviews")
def create_product_review(
    product_id: str,
    request: CreateReviewRequest,
    session: Session = Depends(get_session),
):
    review = storage.create_review(session, product_id, **request.model_dump())
    return review.to_dict()


@app.patch("/api/reviews/{review_id}")
def update_review(
    review_id: str,
    request: ReviewUpdate,
    session: Session = Depends(get_session),
):
    if request.is_selected is not None or request.is_published is not None:
        storage.update_review_flags(
            session, review_id, is_selected=request.is_selected, is_published=request.is_published
        )
    review = storage.update_review_content(
        session, review_id, content=request.content, author=request.author, rating=request.rating
    )
    return review.to_dict()


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, session: Session = Depends(get_session)):
    storage.delete_review(session, review_id)
    return {"success": True}


@app.post("/api/reviews/{product_id}/publish")
def publish_reviews(product_id: str, session: Session = Depends(get_session)):
    """Rebuild the public snapshot from selected and published reviews."""
    return storage.rebuild_published_reviews(session, product_id).to_dict()


@app.get("/api/reviews-json/{product_id}")
def get_reviews_json(product_id: str, session: Session = Depends(get_session)):
    return storage.get_published_reviews(session, product_id).to_dict()


@app.put("/api/review-config")
def put_review_config(request: ReviewConfigRequest, session: Session = Depends(get_session)):
    fields = request.model_dump(exclude={"user_id", "product_id"}, exclude_none=True)
    return storage.upsert_review_config(session, request.user_id, request.product_id, **fields).to_dict()


# Storefront documents

@app.get("/api/reviews/{product_id}/iframe", response_class=HTMLResponse)
def reviews_iframe(
    product_id: str,
    page: int = Query(1, ge=1),
    user_id: Optional[str] = Query(None, alias="userId"),
    services: Services = Depends(get_services),
    session: Session = Depends(get_session),
):
    """Reviews widget document for iframe embedding."""
    try:
        snapshot = storage.get_published_reviews(session, product_id)
    except NotFoundError:
        snapshot = None
    review_config = storage.get_review_config(session, user_id, product_id)
    return HTMLResponse(content=services.widget.render(snapshot, review_config, page))


@app.get("/api/reviews/{product_id}/script")
def reviews_script(
    product_id: str,
    shop_domain: Optional[str] = Query(None, alias="shopDomain"),
    user_id: Optional[str] = Query(None, alias="userId"),
    services: Services = Depends(get_services),
    session: Session = Depends(get_session),
):
    review_config = storage.get_review_config(session, user_id, product_id)
    script = services.inject_script.render(
        api_url=services.public_base_url,
        shop_domain=shop_domain,
        user_id=user_id,
        position=review_config.position if review_config else None,
        custom_selector=review_config.custom_selector if review_config else None,
    )
    return Response(content=script, media_type="application/javascript; charset=utf-8")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)

"""
Extraction Layer for the Pokify import service.

Turns a product URL into ProductData:
1. optional screenshot
2. one flat extractor chain (primary / direct / legacy) under a shared time budget
3. vision/text extraction over the winning markdown
4. description image reconciliation and image merge
5. form-compatible post-processing (prices, synthesized markdown)
"""
import asyncio
import re
import time
from typing import Dict, List, Optional, Tuple

from pokify.adapters.html_scraper import HTMLScraper
from pokify.adapters.linkfy import LinkfyAdapter, PRICE_PATTERN
from pokify.adapters.llm_client import VisionExtractor
from pokify.adapters.screenshot import ScreenshotCapturer
from pokify.errors import ExtractionFailed
from pokify.layers.reconciler import (
    DescriptionReconciler,
    ImageSelectionStrategy,
    extract_markdown_images,
    is_placeholder,
)
from pokify.models.product import (
    ExtractedPage,
    ExtractedProduct,
    ExtractionResult,
    ExtractorOutput,
    ExtractorStrategy,
    LegacyProduct,
    ProductData,
)
from pokify.utils.logger import LayerLogger


NEW_EXTRACTOR_CHAIN = [ExtractorStrategy.PRIMARY, ExtractorStrategy.DIRECT, ExtractorStrategy.LEGACY]
LEGACY_EXTRACTOR_CHAIN = [ExtractorStrategy.LEGACY, ExtractorStrategy.DIRECT, ExtractorStrategy.PRIMARY]


def normalize_price(value: Optional[str]) -> str:
    """
    Normalize a price string to a dot-decimal number.

    ``"R$ 1.299,90"`` -> ``"1299.90"``, ``"129,90"`` -> ``"129.90"``,
    ``"1,299.90"`` -> ``"1299.90"``. Already-normalized values pass through.
    """
    if not value:
        return ""
    text = str(value).replace("R$", "").replace("\xa0", "").replace(" ", "").strip()

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")

    return re.sub(r"[^\d.]", "", text)


def normalize_discount(value: Optional[str]) -> str:
    match = re.search(r"\d+(?:[.,]\d+)?", str(value or ""))
    return match.group(0).replace(",", ".") if match else ""


def clean_image_list(images: List[str]) -> List[str]:
    """Drop placeholders and duplicates; ``//`` URLs become https."""
    result: List[str] = []
    for url in images or []:
        if not isinstance(url, str):
            continue
        url = url.strip()
        if not url or is_placeholder(url):
            continue
        if url.startswith("//"):
            url = f"https:{url}"
        if url not in result:
            result.append(url)
    return result


def build_form_markdown(
    title: str,
    price: str,
    original_price: str,
    discount_percentage: str,
    variants: List[str],
    images: List[str],
) -> str:
    """
    Markdown block the import form parses with regexes.
    Lines are only emitted for values that exist.
    """
    lines = []
    if title:
        lines.append(f"# {title}")
        lines.append("")
    if price:
        lines.append(f"Preço: R$ {price}")
    if original_price:
        lines.append(f"Preço Original: R$ {original_price}")
    if discount_percentage:
        lines.append(f"Desconto: {discount_percentage}%")
    if variants:
        lines.append(f"Variantes: {', '.join(variants)}")
    if images:
        lines.append("")
        lines.extend(f"![]({url})" for url in images if not is_placeholder(url))
    return "\n".join(lines)


def legacy_to_output(product: LegacyProduct) -> ExtractorOutput:
    """Render a legacy structured product as extractor markdown."""
    lines = []
    if product.title:
        lines.append(f"# {product.title}")
    if product.description:
        lines.append(product.description)
    if product.price:
        lines.append(f"Preço: R$ {product.price}")
    if product.original_price:
        lines.append(f"Preço Original: R$ {product.original_price}")
    if product.discount_percentage:
        lines.append(f"Desconto: {product.discount_percentage}%")
    if product.installments:
        lines.append(
            f"Parcelamento: {product.installments.count}x de R$ {product.installments.value}"
        )
    if product.variants:
        lines.append(f"Variantes: {', '.join(product.variants)}")

    images = clean_image_list([product.image_url]) if product.image_url else []
    lines.extend(f"![]({url})" for url in images)

    if product.markdown:
        lines.append("")
        lines.append(product.markdown)

    return ExtractorOutput(
        success=True,
        data=ExtractedPage(
            title=product.title,
            description=product.description,
            markdown="\n\n".join(lines),
            images=images,
            metadata={"currency": product.currency},
        ),
    )


def heuristic_product(page: ExtractedPage) -> ExtractedProduct:
    """Best-effort product from extractor output alone (no AI configured)."""
    prices = [normalize_price(p) for p in PRICE_PATTERN.findall(page.markdown or "")]
    prices = [p for p in prices if p]
    images = clean_image_list(page.images)

    return ExtractedProduct(
        title=page.title,
        description=page.description,
        price=prices[0] if prices else "",
        currency="BRL" if prices else "",
        main_images=images,
        images=images,
    )


class ExtractionLayer:
    """
    Extraction orchestrator.

    Args:
        linkfy: Linkfy adapter (primary and legacy strategies)
        scraper: Direct HTML scraper
        vision: Vision/text extractor
        capturer: Screenshot capturer for visual mode, optional
        use_new_extractor: Lead with PRIMARY instead of LEGACY
        budget_seconds: Time budget shared by the whole extractor chain
        selection_strategy: Description image guess used by the reconciler
    """

    def __init__(
        self,
        linkfy: LinkfyAdapter,
        scraper: HTMLScraper,
        vision: VisionExtractor,
        capturer: Optional[ScreenshotCapturer] = None,
        use_new_extractor: bool = False,
        budget_seconds: float = 90.0,
        selection_strategy: Optional[ImageSelectionStrategy] = None,
    ):
        self.linkfy = linkfy
        self.scraper = scraper
        self.vision = vision
        self.capturer = capturer
        self.use_new_extractor = use_new_extractor
        self.budget_seconds = budget_seconds
        self.reconciler = DescriptionReconciler(selection_strategy)
        self.logger = LayerLogger("extraction_layer")

    def build_chain(self) -> List[ExtractorStrategy]:
        """DIRECT is always the single fallback hop after the chosen head."""
        chain = NEW_EXTRACTOR_CHAIN if self.use_new_extractor else LEGACY_EXTRACTOR_CHAIN
        return list(chain)

    async def _run_strategy(self, strategy: ExtractorStrategy, url: str) -> ExtractorOutput:
        if strategy == ExtractorStrategy.PRIMARY:
            return await self.linkfy.extract_markdown(url)
        if strategy == ExtractorStrategy.DIRECT:
            return await self.scraper.fetch_page(url)

        product = await self.linkfy.extract_product(url)
        if product is None:
            return ExtractorOutput.failure("Legacy extractor returned no product")
        return legacy_to_output(product)

    async def run_chain(
        self, url: str
    ) -> Tuple[Optional[ExtractorStrategy], Optional[ExtractorOutput], Dict[str, str]]:
        """
        Run each strategy at most once until one yields markdown.

        Returns:
            (winning strategy, its output, strategy -> error for failed attempts)
        """
        chain = self.build_chain()
        attempts: Dict[str, str] = {}
        deadline = time.monotonic() + self.budget_seconds

        for index, strategy in enumerate(chain):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                attempts[strategy.value] = "extraction budget exhausted"
                continue

            self.logger.log_action("extractor_attempt", "started", url=url, strategy=strategy.value)
            try:
                output = await asyncio.wait_for(self._run_strategy(strategy, url), timeout=remaining)
            except asyncio.TimeoutError:
                output = ExtractorOutput.failure(f"timed out after {remaining:.1f}s")
            except Exception as e:
                self.logger.log_error(
                    f"Extractor raised: {str(e)}",
                    error_type="extractor_error",
                    url=url,
                    strategy=strategy.value,
                )
                output = ExtractorOutput.failure(str(e))

            if output.success and output.data and output.data.markdown:
                self.logger.log_decision(
                    decision=f"use_{strategy.value}",
                    reason="extractor succeeded",
                    url=url,
                    markdown_length=len(output.data.markdown),
                    images=len(output.data.images),
                )
                return strategy, output, attempts

            attempts[strategy.value] = output.error or "no markdown returned"
            if index + 1 < len(chain):
                self.logger.log_fallback(
                    from_source=strategy.value,
                    to_source=chain[index + 1].value,
                    reason=attempts[strategy.value],
                    url=url,
                )

        return None, None, attempts

    async def _capture_screenshot(self, url: str) -> Optional[str]:
        if not self.capturer:
            self.logger.log_decision(
                decision="skip_screenshot",
                reason="no screenshot capturer configured",
                url=url,
            )
            return None
        try:
            return await self.capturer.capture(url)
        except Exception as e:
            self.logger.log_fallback(
                from_source="screenshot",
                to_source="markdown_only",
                reason=f"Screenshot capture failed: {str(e)}",
                url=url,
            )
            return None

    async def extract(
        self,
        url: str,
        visual: bool = False,
        screenshot: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> ExtractionResult:
        """
        Extract a product from ``url``.

        Args:
            url: Product page URL
            visual: Capture a screenshot when none is supplied
            screenshot: Base64 JPEG supplied by the caller
            mode: Vision extractor mode (``standard`` or ``pro_copy``)

        Returns:
            ExtractionResult; total failure is ``success=False`` with attempts
        """
        start = time.monotonic()
        self.logger.log_action(
            "extraction",
            "started",
            url=url,
            visual=visual,
            mode=mode,
            chain=[s.value for s in self.build_chain()],
        )

        if visual and not screenshot:
            screenshot = await self._capture_screenshot(url)

        def elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        strategy, output, attempts = await self.run_chain(url)
        if output is None:
            self.logger.log_error(
                "All extractors failed",
                error_type="extraction_failed",
                url=url,
                attempts=attempts,
            )
            return ExtractionResult(
                success=False,
                error="All extractors failed",
                attempts=attempts,
                used_screenshot=bool(screenshot),
                processing_time_ms=elapsed_ms(),
            )

        page = output.data

        if self.vision.is_available():
            llm = await self.vision.extract(url, page.markdown, screenshot, mode)
            if not llm.success or llm.data is None:
                self.logger.log_error(
                    f"Vision extraction failed: {llm.error}",
                    error_type="vision_failed",
                    url=url,
                )
                return ExtractionResult(
                    success=False,
                    error=llm.error or "Vision extraction failed",
                    source=strategy,
                    attempts=attempts,
                    used_screenshot=bool(screenshot),
                    processing_time_ms=elapsed_ms(),
                )
            extracted = llm.data
            ai_extracted = True
        else:
            self.logger.log_decision(
                decision="heuristic_product",
                reason="AI service not configured",
                url=url,
            )
            extracted = heuristic_product(page)
            ai_extracted = False

        product = self._assemble(url, page, extracted)

        self.logger.log_extraction_summary(
            source=strategy.value,
            fields_present=product.get_present_fields(),
            fields_missing=product.get_missing_fields(),
            images_count=len(product.images),
            url=url,
            ai_extracted=ai_extracted,
        )

        return ExtractionResult(
            success=True,
            data=product,
            source=strategy,
            attempts=attempts,
            used_screenshot=bool(screenshot),
            ai_extracted=ai_extracted,
            processing_time_ms=elapsed_ms(),
        )

    def _assemble(self, url: str, page: ExtractedPage, extracted: ExtractedProduct) -> ProductData:
        description_images = clean_image_list(extracted.description_images)

        description = self.reconciler.reconcile(
            extracted.description or page.description,
            page.markdown,
            base_url=url,
            explicit_images=description_images or None,
        )

        main_images = clean_image_list(extracted.main_images)
        images = clean_image_list(extracted.images) or list(main_images)

        extractor_images = clean_image_list(page.images)
        if len(extractor_images) > len(main_images):
            self.logger.log_decision(
                decision="prefer_extractor_images",
                reason="extractor found more images than the model",
                url=url,
                extractor_images=len(extractor_images),
                model_images=len(main_images),
            )
            main_images = extractor_images
            images = list(extractor_images)

        price = normalize_price(extracted.price)
        original_price = normalize_price(extracted.original_price)
        discount = normalize_discount(extracted.discount_percentage)
        variants = [v for v in extracted.variants if v]

        form_markdown = build_form_markdown(
            extracted.title, price, original_price, discount, variants, images
        )

        return ProductData(
            url=url,
            title=extracted.title,
            description=description,
            price=price,
            original_price=original_price,
            discount_percentage=discount,
            currency=extracted.currency or ("BRL" if price else ""),
            variants=variants,
            main_images=main_images,
            description_images=description_images,
            images=extract_markdown_images(form_markdown),
            form_markdown=form_markdown,
        )

    async def extract_product_data(
        self,
        url: str,
        visual: bool = False,
        screenshot: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> ProductData:
        """
        Like ``extract`` but returns the product directly.

        Raises:
            ExtractionFailed: every extractor (or the vision step) failed
        """
        result = await self.extract(url, visual=visual, screenshot=screenshot, mode=mode)
        if not result.success or result.data is None:
            raise ExtractionFailed(
                result.error or "Extraction failed",
                detail={"attempts": result.attempts},
            )
        return result.data

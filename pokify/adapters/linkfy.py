"""
Linkfy adapter for the Pokify import service.

Linkfy turns a product page into markdown. Two contracts of the same
endpoint are supported:
- extract_markdown: the current markdown contract (primary extractor)
- extract_product: the older structured contract exposing
  ``data.markdownText``, parsed into a LegacyProduct (legacy extractor)
"""
import re
from typing import Any, List, Optional

import httpx

from pokify.models.product import (
    ExtractedPage,
    ExtractorOutput,
    Installments,
    LegacyProduct,
)
from pokify.utils.logger import LayerLogger


IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".gif")
IMAGE_PROPERTY_NAMES = {
    "images", "photos", "gallery", "media", "featured_image", "image", "src", "url",
}
MAX_IMAGE_SEARCH_DEPTH = 5

SIZE_VARIANTS = ("P", "M", "G", "GG", "XG", "2XG", "3XG")

PRICE_PATTERN = re.compile(r"R\$\s*([\d.,]+)")
DISCOUNT_PATTERN = re.compile(r"(\d+)%\s*OFF", re.IGNORECASE)
INSTALLMENT_PATTERN = re.compile(r"(\d+)x\s*de\s*R\$\s*([\d.,]+)", re.IGNORECASE)
FIRST_IMAGE_PATTERN = re.compile(r"!\[.*?\]\((.*?)\)")


def find_images_in_payload(obj: Any, depth: int = 0) -> List[str]:
    """
    Recursively collect image URLs from an arbitrary JSON payload.

    Lists contribute strings that look like absolute image URLs; objects
    contribute the values of image-ish keys (``images``, ``src``, ``url`` ...)
    and are searched further otherwise. Recursion stops below depth 5.
    """
    if depth > MAX_IMAGE_SEARCH_DEPTH or not obj:
        return []

    found: List[str] = []

    if isinstance(obj, list):
        for item in obj:
            if isinstance(item, str):
                lowered = item.lower()
                if any(ext in lowered for ext in IMAGE_EXTENSIONS) and item.startswith(("http", "//")):
                    found.append(item)
            elif isinstance(item, (dict, list)):
                found.extend(find_images_in_payload(item, depth + 1))
        return found

    if not isinstance(obj, dict):
        return []

    for key, value in obj.items():
        if key.lower() in IMAGE_PROPERTY_NAMES:
            if isinstance(value, list):
                for img in value:
                    if isinstance(img, str):
                        found.append(img)
                    elif isinstance(img, dict):
                        if img.get("src"):
                            found.append(img["src"])
                        elif img.get("url"):
                            found.append(img["url"])
            elif isinstance(value, str):
                found.append(value)
            elif isinstance(value, dict):
                for nested_key in ("src", "url"):
                    if isinstance(value.get(nested_key), str):
                        found.append(value[nested_key])
        elif isinstance(value, (dict, list)):
            found.extend(find_images_in_payload(value, depth + 1))

    return found


def _normalize_amount(amount: str) -> str:
    # Only the first thousands separator is removed, as the API has always done.
    return amount.replace(".", "", 1).replace(",", ".")


def parse_price_info(markdown: str) -> dict:
    """Pull price, original price, discount and installments out of markdown."""
    prices = [_normalize_amount(m) for m in PRICE_PATTERN.findall(markdown)]

    discount = DISCOUNT_PATTERN.search(markdown)
    installment = INSTALLMENT_PATTERN.search(markdown)

    return {
        "price": prices[0] if prices else "",
        "original_price": prices[1] if len(prices) > 1 else "",
        "discount_percentage": discount.group(1) if discount else "",
        "installments": Installments(
            count=int(installment.group(1)),
            value=installment.group(2).replace(",", "."),
        ) if installment else None,
    }


def parse_size_variants(markdown: str) -> List[str]:
    """Sizes listed on their own line, in canonical size order."""
    return [size for size in SIZE_VARIANTS if f"\n{size}\n" in markdown]


def parse_first_image(markdown: str) -> str:
    match = FIRST_IMAGE_PATTERN.search(markdown)
    return match.group(1) if match else ""


class LinkfyAdapter:
    """
    Client for the Linkfy text-extraction API.
    Upstream failures are returned as failure values, never raised.
    """

    def __init__(
        self,
        api_url: str,
        api_token: Optional[str] = None,
        legacy_api_token: Optional[str] = None,
        timeout: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_token = api_token
        self.legacy_api_token = legacy_api_token or api_token
        self.timeout = timeout
        self.transport = transport
        self.logger = LayerLogger("linkfy")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _post(self, url: str, token: Optional[str]) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            "api-token": token or "",
        }
        async with self._client() as client:
            return await client.post(self.api_url, json={"url": url}, headers=headers)

    async def extract_markdown(self, url: str) -> ExtractorOutput:
        """
        Fetch page markdown from the current Linkfy contract.

        Returns:
            ExtractorOutput with title, description, markdown and images
        """
        if not self.api_token:
            self.logger.log_action("extract_markdown", "skipped", url=url, reason="no_token")
            return ExtractorOutput.failure("Linkfy API token is not configured")

        self.logger.log_action("extract_markdown", "started", url=url)

        try:
            response = await self._post(url, self.api_token)
        except httpx.HTTPError as e:
            self.logger.log_error(f"Linkfy request failed: {str(e)}", error_type="http_error", url=url)
            return ExtractorOutput.failure(f"Linkfy request failed: {str(e)}")

        self.logger.log_http_call(
            url=url,
            endpoint=self.api_url,
            status_code=response.status_code,
            result="ok" if response.is_success else "error",
        )

        if not response.is_success:
            return ExtractorOutput.failure(
                f"Linkfy API error: {response.reason_phrase or response.status_code}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            self.logger.log_error(f"Linkfy returned invalid JSON: {str(e)}", error_type="malformed_response", url=url)
            return ExtractorOutput.failure("Linkfy returned invalid JSON")

        page = self._parse_markdown_payload(payload)
        if page is None:
            self.logger.log_error("Markdown not found in Linkfy response", error_type="malformed_response", url=url)
            return ExtractorOutput.failure("Markdown not found in Linkfy response")

        self.logger.log_action(
            "extract_markdown",
            "completed",
            url=url,
            markdown_length=len(page.markdown),
            images=len(page.images),
        )
        return ExtractorOutput(success=True, data=page)

    def _parse_markdown_payload(self, payload: Any) -> Optional[ExtractedPage]:
        """Accept the three response shapes Linkfy has used over time."""
        if not isinstance(payload, dict):
            return None

        data = payload.get("data")
        if isinstance(data, list) and data and isinstance(data[0], dict):
            item = data[0]
        elif any(payload.get(key) for key in ("markdown", "content", "text")):
            item = payload
        elif isinstance(data, dict):
            item = data
        else:
            return None

        markdown = item.get("markdown") or item.get("content") or item.get("text") or ""
        if not markdown:
            return None

        images = item.get("images")
        if not isinstance(images, list) or not images:
            images = find_images_in_payload(payload)

        return ExtractedPage(
            title=item.get("title") or "",
            description=item.get("description") or "",
            markdown=markdown,
            images=[img for img in images if isinstance(img, str) and img],
            metadata=payload.get("metadata") or {},
        )

    async def extract_product(self, url: str) -> Optional[LegacyProduct]:
        """
        Fetch a structured product from the legacy Linkfy contract.

        Returns:
            LegacyProduct, or None when the call fails or has no markdownText
        """
        if not self.legacy_api_token:
            self.logger.log_action("extract_product", "skipped", url=url, reason="no_token")
            return None

        self.logger.log_action("extract_product", "started", url=url)

        try:
            response = await self._post(url, self.legacy_api_token)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            self.logger.log_error(f"Legacy Linkfy request failed: {str(e)}", error_type="http_error", url=url)
            return None
        except ValueError as e:
            self.logger.log_error(f"Legacy Linkfy returned invalid JSON: {str(e)}", error_type="malformed_response", url=url)
            return None

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict) or not data.get("markdownText"):
            self.logger.log_error("markdownText missing in legacy response", error_type="malformed_response", url=url)
            return None

        markdown = data["markdownText"]
        price_info = parse_price_info(markdown)

        product = LegacyProduct(
            title=data.get("title") or "",
            description=data.get("description") or "",
            markdown=markdown,
            image_url=parse_first_image(markdown),
            url=url,
            variants=parse_size_variants(markdown),
            **price_info,
        )

        self.logger.log_action(
            "extract_product",
            "completed",
            url=url,
            has_price=bool(product.price),
            variants=len(product.variants),
        )
        return product

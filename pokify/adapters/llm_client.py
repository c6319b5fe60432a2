"""
Claude API client and vision/text product extractor.

The extractor sends page markdown (and optionally a full-page screenshot) to
Claude and asks for the product as a JSON object. Model output is treated
as untrusted: JSON is located, repaired when truncated, and as a last resort
scraped field by field with regexes.
"""
import json
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import anthropic

from pokify.errors import ServiceUnavailable, UpstreamServiceError
from pokify.models.product import ExtractedProduct, ExtractionMode, LLMExtraction
from pokify.utils.logger import LayerLogger


SYSTEM_PROMPT = """You extract structured product data from e-commerce pages.

You may ONLY report what is present in the page content or screenshot.
Never invent prices, images or variants. Image URLs must be copied exactly
as they appear in the content.

Respond with a single JSON object and nothing else."""

EXTRACTION_PROMPT = """Extract the product on this page.

Return JSON with exactly these keys:
{{
  "title": "exact product title",
  "description": "{description_instruction}",
  "price": "current price, digits and decimal separator only",
  "originalPrice": "compare-at price if shown, else empty string",
  "discountPercentage": "discount percentage digits if shown, else empty string",
  "currency": "ISO currency code, e.g. BRL",
  "variants": ["size/colour options as shown"],
  "mainImages": ["gallery/carousel image URLs"],
  "descriptionImages": ["image URLs embedded in the description text"]
}}
{screenshot_instruction}
Rules:
- If an image URL starts with // prefix it with https:
- Do not include logos, icons, banners or payment badges
- Use at most 5 description images

Page URL: {url}

Page content:
{markdown}"""

SCREENSHOT_INSTRUCTION = """
A full-page screenshot is attached. Use it to tell the images apart:
main images are the large product photos in the gallery/carousel near the
top of the page; description images appear inside the descriptive text
(details, dimensions, usage). Getting this separation right is the most
important part of the task.
"""

STANDARD_DESCRIPTION = "complete product description with every feature and specification, as HTML"
PRO_COPY_DESCRIPTION = (
    "persuasive sales copy rewritten from the page description, as HTML with "
    "short paragraphs and bullet lists, keeping every factual specification"
)

MARKDOWN_LIMIT = 8000
MARKDOWN_LIMIT_WITH_SCREENSHOT = 5000

SCALAR_FIELDS = {
    "title": "title",
    "description": "description",
    "price": "price",
    "originalPrice": "original_price",
    "discountPercentage": "discount_percentage",
    "currency": "currency",
}
IMAGE_FIELDS = {
    "mainImages": "main_images",
    "descriptionImages": "description_images",
}

IMAGE_URL_PATTERN = re.compile(r"\.(jpe?g|gif|png|webp)(\?.*)?$", re.IGNORECASE)
SHOPIFY_IMAGE_MARKERS = ("/cdn/shop/", "shopifypreview.com", "cdn.shopify.com")
URL_IN_ARRAY_PATTERN = re.compile(r'(?:https?:)?//[^"\s,\]]+')
CODE_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


class ClaudeClient:
    """
    Thin async wrapper around the Anthropic Messages API.
    Shared by the vision extractor and the AI content services.
    """

    # Model selection
    MODEL_FAST = "claude-3-5-haiku-20241022"  # Extraction, translation
    MODEL_QUALITY = "claude-sonnet-4-20250514"  # Copywriting

    def __init__(self, api_key: Optional[str] = None, client: Any = None):
        self.logger = LayerLogger("claude_client")
        if client is not None:
            self.client = client
        elif api_key:
            self.client = anthropic.AsyncAnthropic(api_key=api_key)
            self.logger.log_action("init", "completed", model=self.MODEL_FAST)
        else:
            self.logger.log_action("init", "skipped", reason="CLAUDE_API_KEY not configured")
            self.client = None

    def is_available(self) -> bool:
        """Check if Claude client is properly configured."""
        return self.client is not None

    async def complete(
        self,
        prompt: str,
        system: str = SYSTEM_PROMPT,
        model: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.0,
        image_base64: Optional[str] = None,
    ) -> str:
        """
        Send one user message and return the concatenated text blocks.

        Raises:
            ServiceUnavailable: no API key configured
            UpstreamServiceError: the API call failed
        """
        if not self.client:
            raise ServiceUnavailable("AI service is not configured")

        content: List[Dict[str, Any]] = []
        if image_base64:
            content.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": "image/jpeg",
                    "data": image_base64,
                },
            })
        content.append({"type": "text", "text": prompt})

        model = model or self.MODEL_FAST
        try:
            response = await self.client.messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.APIError as e:
            self.logger.log_error(f"Claude API error: {str(e)}", error_type="api_error", model=model)
            raise UpstreamServiceError(f"Claude API error: {str(e)}")

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )
        usage = getattr(response, "usage", None)
        self.logger.log_action(
            "claude_completion",
            "completed",
            model=model,
            with_image=bool(image_base64),
            response_length=len(text),
            tokens=(usage.input_tokens + usage.output_tokens) if usage else None,
        )
        return text


def extract_json_block(content: str) -> str:
    """Strip code fences and keep the outermost ``{...}`` (or ``[...]``)."""
    fenced = CODE_FENCE_PATTERN.search(content)
    if fenced:
        content = fenced.group(1)
    content = content.strip()

    starts = [i for i in (content.find("{"), content.find("[")) if i >= 0]
    if not starts:
        return content
    start = min(starts)
    closer = "}" if content[start] == "{" else "]"
    end = content.rfind(closer)
    # Truncated output has no closing bracket; keep the tail for repair
    return content[start:end + 1] if end > start else content[start:]


def _open_brackets(text: str) -> List[str]:
    stack: List[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char in "{[":
            stack.append(char)
        elif char in "}]" and stack:
            stack.pop()
    return stack


def repair_truncated_json(content: str) -> Optional[Any]:
    """
    Recover the longest parseable prefix of a truncated JSON document.

    Cuts after the last complete string or array value and closes whatever
    brackets are still open. Returns None when nothing parses.
    """
    if not content.lstrip().startswith(("{", "[")):
        return None

    cut_points = sorted(
        {m.end() for m in re.finditer(r'"\s*[,\]}]|"\s*$|[\]}]\s*,?', content)},
        reverse=True,
    )
    for cut in cut_points[:50]:
        prefix = content[:cut].rstrip().rstrip(",")
        if prefix.count('"') % 2:
            continue
        closers = "".join("}" if b == "{" else "]" for b in reversed(_open_brackets(prefix)))
        try:
            return json.loads(prefix + closers)
        except json.JSONDecodeError:
            continue
    return None


def loads_lenient(content: str) -> Optional[Any]:
    """Parse model output as JSON, repairing truncation when needed."""
    block = extract_json_block(content or "")
    if not block:
        return None
    try:
        return json.loads(block)
    except json.JSONDecodeError:
        return repair_truncated_json(block)


def regex_fallback(content: str) -> Optional[Dict[str, Any]]:
    """Scrape fields out of output too broken to parse as JSON."""
    data: Dict[str, Any] = {}
    for key in SCALAR_FIELDS:
        match = re.search(rf'"{key}"\s*:\s*"((?:[^"\\]|\\.)*)"', content)
        if match:
            data[key] = match.group(1).replace('\\"', '"').replace("\\n", "\n")

    for key in IMAGE_FIELDS:
        match = re.search(rf'"{key}"\s*:\s*\[([^\]]*)', content)
        if match:
            data[key] = URL_IN_ARRAY_PATTERN.findall(match.group(1))

    if not data.get("title") and not data.get("mainImages") and not data.get("descriptionImages"):
        return None
    return data


def is_image_url(url: str) -> bool:
    is_absolute = url.startswith(("http://", "https://"))
    if IMAGE_URL_PATTERN.search(urlparse(url).path or url):
        return is_absolute
    return is_absolute and any(marker in url for marker in SHOPIFY_IMAGE_MARKERS)


def normalize_image_list(urls: Any, page_url: Optional[str] = None) -> List[str]:
    """
    Normalize, filter and de-duplicate image URLs reported by the model.
    """
    if not isinstance(urls, list):
        return []

    origin = ""
    if page_url:
        parsed = urlparse(page_url)
        if parsed.scheme and parsed.netloc:
            origin = f"{parsed.scheme}://{parsed.netloc}"

    result: List[str] = []
    for url in urls:
        if isinstance(url, dict):
            url = url.get("src") or url.get("url")
        if not isinstance(url, str):
            continue
        url = url.strip()
        if not url or "placeholder" in url.lower():
            continue
        if url.startswith("//"):
            url = f"https:{url}"
        elif url.startswith("/") and origin:
            url = f"{origin}{url}"
        if is_image_url(url) and url not in result:
            result.append(url)
    return result


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def build_extracted_product(data: Dict[str, Any], page_url: Optional[str] = None) -> ExtractedProduct:
    """Map the model's camelCase JSON onto an ExtractedProduct."""
    fields: Dict[str, Any] = {
        attr: _as_text(data.get(key)) for key, attr in SCALAR_FIELDS.items()
    }
    for key, attr in IMAGE_FIELDS.items():
        fields[attr] = normalize_image_list(data.get(key), page_url)

    variants = data.get("variants") or []
    if isinstance(variants, list):
        fields["variants"] = [
            _as_text(v.get("name") or v.get("title") if isinstance(v, dict) else v)
            for v in variants
        ]
        fields["variants"] = [v for v in fields["variants"] if v]

    combined: List[str] = []
    for url in fields["main_images"] + fields["description_images"]:
        if url not in combined:
            combined.append(url)
    fields["images"] = combined

    return ExtractedProduct(**fields)


class VisionExtractor:
    """
    Product extraction from markdown, optionally grounded by a screenshot.
    """

    def __init__(self, client: ClaudeClient):
        self.client = client
        self.logger = LayerLogger("vision_extractor")

    def is_available(self) -> bool:
        return self.client.is_available()

    def _settings(self, mode: Optional[str]) -> Dict[str, Any]:
        if mode == ExtractionMode.PRO_COPY.value:
            return {
                "model": ClaudeClient.MODEL_QUALITY,
                "max_tokens": 8000,
                "temperature": 0.7,
                "description_instruction": PRO_COPY_DESCRIPTION,
            }
        return {
            "model": ClaudeClient.MODEL_FAST,
            "max_tokens": 4000,
            "temperature": 0.2,
            "description_instruction": STANDARD_DESCRIPTION,
        }

    async def extract(
        self,
        url: str,
        markdown: str,
        screenshot: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> LLMExtraction:
        """
        Extract a product from page markdown (+ screenshot).

        Returns:
            LLMExtraction; API and parse failures are returned, not raised
        """
        settings = self._settings(mode)
        limit = MARKDOWN_LIMIT_WITH_SCREENSHOT if screenshot else MARKDOWN_LIMIT

        prompt = EXTRACTION_PROMPT.format(
            description_instruction=settings["description_instruction"],
            screenshot_instruction=SCREENSHOT_INSTRUCTION if screenshot else "",
            url=url,
            markdown=(markdown or "")[:limit],
        )

        self.logger.log_action(
            "vision_extract",
            "started",
            url=url,
            mode=mode or ExtractionMode.STANDARD.value,
            markdown_length=len(markdown or ""),
            with_screenshot=bool(screenshot),
        )

        try:
            content = await self.client.complete(
                prompt,
                model=settings["model"],
                max_tokens=settings["max_tokens"],
                temperature=settings["temperature"],
                image_base64=screenshot,
            )
        except (ServiceUnavailable, UpstreamServiceError) as e:
            return LLMExtraction(success=False, error=e.message)

        if not content.strip():
            self.logger.log_error("Empty response from Claude", error_type="malformed_response", url=url)
            return LLMExtraction(success=False, error="Empty response from AI service")

        data = loads_lenient(content)
        if not isinstance(data, dict):
            self.logger.log_fallback(
                from_source="json",
                to_source="regex",
                reason="response is not parseable JSON",
                url=url,
            )
            data = regex_fallback(content)

        if not data:
            self.logger.log_error("Could not parse AI response", error_type="malformed_response", url=url)
            return LLMExtraction(success=False, error="Invalid AI response format")

        product = build_extracted_product(data, url)
        self.logger.log_action(
            "vision_extract",
            "completed",
            url=url,
            title=product.title[:80],
            main_images=len(product.main_images),
            description_images=len(product.description_images),
        )
        return LLMExtraction(success=True, data=product)

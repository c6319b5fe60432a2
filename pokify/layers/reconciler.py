"""
Description reconciler for the Pokify import service.

Normalizes the images of an extracted product description so the HTML can be
stored and published as-is:
- relative image URLs are resolved against the product page URL
- fixed sizing attributes are stripped so images stay responsive
- when the description carries no images at all, images are added back from
  an explicit list or, failing that, guessed from the raw page markdown

Reconciliation is fail-soft: any parse problem returns the description
unchanged.
"""
import re
from typing import Iterable, List, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Tag

from pokify.utils.logger import LayerLogger


DEFAULT_ALT = "Product image"

_MARKDOWN_IMAGE_PATTERN = re.compile(
    r'!\[[^\]]*\]\(\s*<?([^)\s>]+)>?[^)]*\)|<img\b[^>]*?\ssrc=["\']([^"\']+)["\']',
    re.IGNORECASE,
)

_STRIPPED_ATTRIBUTES = ("width", "height", "style")


def is_placeholder(url: Optional[str]) -> bool:
    """Placeholder images are never carried into any output."""
    return bool(url) and "placeholder" in url.lower()


def resolve_image_url(src: str, base_url: Optional[str] = None) -> str:
    """
    Resolve an image src against the page it was found on.

    - ``//cdn/x.jpg`` becomes ``https://cdn/x.jpg``
    - ``/x.jpg`` is resolved against the page origin
    - ``./x.jpg`` and bare ``x.jpg`` are resolved against the page directory

    Absolute URLs are returned untouched, so resolving twice is a no-op.
    """
    src = (src or "").strip()
    if not src:
        return src
    if src.startswith("//"):
        return f"https:{src}"
    if src.startswith(("http://", "https://", "data:")):
        return src
    if not base_url:
        return src

    parsed = urlparse(base_url)
    if not parsed.scheme or not parsed.netloc:
        return src

    origin = f"{parsed.scheme}://{parsed.netloc}"
    base_path = parsed.path[:parsed.path.rfind("/")] if "/" in parsed.path else ""

    if src.startswith("./"):
        return f"{origin}{base_path}/{src[2:]}"
    if src.startswith("/"):
        return f"{origin}{src}"
    return f"{origin}{base_path}/{src}"


def is_absolute_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def extract_markdown_images(markdown: Optional[str]) -> List[str]:
    """
    Pull image references out of markdown or HTML, in document order.

    Matches markdown image syntax and raw ``<img src>`` tags; placeholders
    and duplicates are dropped.
    """
    if not markdown:
        return []

    images: List[str] = []
    seen = set()
    for match in _MARKDOWN_IMAGE_PATTERN.finditer(markdown):
        url = (match.group(1) or match.group(2) or "").strip()
        if not url or is_placeholder(url) or url in seen:
            continue
        seen.add(url)
        images.append(url)
    return images


class ImageSelectionStrategy:
    """Chooses which raw page images belong to the product description."""

    name = "base"

    def select(self, images: List[str]) -> List[str]:
        raise NotImplementedError


class HalfSplitSelection(ImageSelectionStrategy):
    """
    Size-based guess at which images are description images.

    Pages with many images usually lead with the gallery/carousel, so above
    ``threshold`` images the first half is skipped and up to ``tail_limit``
    are taken from the second half. Smaller pages keep the first
    ``head_limit`` images.
    """

    name = "half_split"

    def __init__(self, threshold: int = 10, tail_limit: int = 5, head_limit: int = 2):
        self.threshold = threshold
        self.tail_limit = tail_limit
        self.head_limit = head_limit

    def select(self, images: List[str]) -> List[str]:
        if len(images) > self.threshold:
            half = len(images) // 2
            return images[half:half + self.tail_limit]
        return images[:self.head_limit]


class NoSelection(ImageSelectionStrategy):
    """Never guess; descriptions without images stay without images."""

    name = "none"

    def select(self, images: List[str]) -> List[str]:
        return []


class DescriptionReconciler:
    """
    Normalizes description images and restores missing ones.
    """

    def __init__(self, selection_strategy: Optional[ImageSelectionStrategy] = None):
        self.logger = LayerLogger("reconciler")
        self.selection_strategy = selection_strategy or HalfSplitSelection()

    def reconcile(
        self,
        description: str,
        raw_markdown: str = "",
        base_url: Optional[str] = None,
        explicit_images: Optional[List[str]] = None,
    ) -> str:
        """
        Return the description HTML with normalized and restored images.

        Args:
            description: Extracted description, HTML or plain text
            raw_markdown: Raw page markdown/HTML used for the fallback guess
            base_url: Product page URL used to resolve relative image URLs
            explicit_images: Images known to belong to the description
        """
        if not description:
            return ""

        try:
            return self._reconcile(description, raw_markdown, base_url, explicit_images)
        except Exception as e:
            self.logger.log_error(
                f"Description reconciliation failed: {str(e)}",
                error_type="parse_error",
                url=base_url,
            )
            return description

    def _reconcile(
        self,
        description: str,
        raw_markdown: str,
        base_url: Optional[str],
        explicit_images: Optional[List[str]],
    ) -> str:
        is_html = "<" in description and ">" in description
        html = description if is_html else f"<div>{description}</div>"

        soup = BeautifulSoup(html, "html.parser")

        for img in soup.find_all("img"):
            src = (img.get("src") or "").strip()
            if not src or is_placeholder(src):
                img.decompose()
                continue

            img["src"] = resolve_image_url(src, base_url)
            for attribute in _STRIPPED_ATTRIBUTES:
                img.attrs.pop(attribute, None)
            img["loading"] = "lazy"
            if not img.get("alt"):
                img["alt"] = DEFAULT_ALT

        if soup.find("img") is None:
            if explicit_images:
                self.logger.log_decision(
                    decision="append_explicit_images",
                    reason="description has no images",
                    url=base_url,
                    candidates=len(explicit_images),
                )
                self._append_gallery(soup, explicit_images, base_url)
            else:
                candidates = extract_markdown_images(raw_markdown)
                selected = self.selection_strategy.select(candidates)
                self.logger.log_decision(
                    decision="append_guessed_images",
                    reason="description has no images and no explicit list",
                    url=base_url,
                    strategy=self.selection_strategy.name,
                    candidates=len(candidates),
                    selected=len(selected),
                )
                self._append_gallery(soup, selected, base_url)

        result = str(soup)
        self.logger.log_action(
            "reconcile_description",
            "completed",
            images=len(soup.find_all("img")),
            length=len(result),
        )
        return result

    def _append_gallery(
        self,
        soup: BeautifulSoup,
        images: Iterable[str],
        base_url: Optional[str],
    ) -> None:
        urls = []
        for src in images:
            if not src or is_placeholder(src):
                continue
            resolved = resolve_image_url(src, base_url)
            if not is_absolute_http_url(resolved):
                self.logger.log_action("gallery_image", "rejected", src=src[:120])
                continue
            if resolved not in urls:
                urls.append(resolved)

        if not urls:
            return

        gallery = soup.new_tag("div", attrs={"class": "pokify-description-gallery"})
        for url in urls:
            wrapper = soup.new_tag("div")
            wrapper.append(soup.new_tag("img", attrs={
                "src": url,
                "alt": DEFAULT_ALT,
                "loading": "lazy",
            }))
            gallery.append(wrapper)

        top_level = [child for child in soup.contents if isinstance(child, Tag)]
        root = top_level[0] if len(top_level) == 1 else soup
        root.append(gallery)


_default_reconciler: Optional[DescriptionReconciler] = None


def reconcile(
    description: str,
    raw_markdown: str = "",
    base_url: Optional[str] = None,
    explicit_images: Optional[List[str]] = None,
) -> str:
    """Reconcile with the default half-split selection strategy."""
    global _default_reconciler
    if _default_reconciler is None:
        _default_reconciler = DescriptionReconciler()
    return _default_reconciler.reconcile(description, raw_markdown, base_url, explicit_images)

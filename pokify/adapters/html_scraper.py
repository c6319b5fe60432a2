"""
HTML Scraper Adapter for the Pokify import service.
Direct page fetch used when the Linkfy extractors are unavailable.
"""
import re
from typing import List, Optional
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from pokify.models.product import ExtractedPage, ExtractorOutput
from pokify.utils.logger import LayerLogger


IMAGE_URL_PATTERN = re.compile(r"\.(jpg|jpeg|png|gif|webp)", re.IGNORECASE)
SHOPIFY_IMAGE_MARKERS = ("/cdn/shop/", "shopifypreview.com")


def looks_like_image(url: str) -> bool:
    """Keep image files and Shopify CDN paths (which often lack an extension)."""
    return bool(IMAGE_URL_PATTERN.search(url)) or any(m in url for m in SHOPIFY_IMAGE_MARKERS)


class HTMLScraper:
    """
    HTML scraping adapter for product pages.
    Returns the raw HTML as markdown plus the image URLs found in it.
    """

    def __init__(self, timeout: int = 30, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport
        self.logger = LayerLogger("html_scraper")

    async def fetch_page(self, url: str) -> ExtractorOutput:
        """
        Fetch a product page directly.

        Args:
            url: The URL to fetch

        Returns:
            ExtractorOutput; non-2xx and network errors are failures
        """
        self.logger.log_action("fetch_html", "started", url=url)

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                response = await client.get(url, headers=self._get_headers())
                response.raise_for_status()
                html = response.text
        except httpx.HTTPError as e:
            self.logger.log_error(
                f"Failed to fetch URL: {str(e)}",
                error_type="http_error",
                url=url
            )
            return ExtractorOutput.failure(f"Direct fetch failed: {str(e)}")

        self.logger.log_action(
            "fetch_html",
            "completed",
            url=url,
            status_code=response.status_code,
            content_length=len(html)
        )

        return ExtractorOutput(success=True, data=self._parse_html(url, html))

    def _get_headers(self) -> dict:
        """Get request headers mimicking a desktop browser."""
        return {
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
            "Accept-Language": "pt-BR,pt;q=0.9,en;q=0.8",
        }

    def _parse_html(self, url: str, html: str) -> ExtractedPage:
        soup = BeautifulSoup(html, "lxml")

        images = self._extract_images(soup, url)
        self.logger.log_action("parse_html", "completed", url=url, images=len(images))

        return ExtractedPage(
            title=self._extract_title(soup),
            description=self._extract_meta_description(soup),
            markdown=html,
            images=images,
        )

    def _extract_title(self, soup: BeautifulSoup) -> str:
        """Extract page title."""
        title_tag = soup.find("title")
        if title_tag and title_tag.get_text(strip=True):
            return title_tag.get_text().strip()

        og_title = soup.find("meta", property="og:title")
        if og_title and og_title.get("content"):
            return og_title["content"].strip()

        return ""

    def _extract_meta_description(self, soup: BeautifulSoup) -> str:
        meta_desc = soup.find("meta", attrs={"name": "description"})
        if meta_desc and meta_desc.get("content"):
            return meta_desc["content"].strip()

        og_desc = soup.find("meta", property="og:description")
        if og_desc and og_desc.get("content"):
            return og_desc["content"].strip()

        return ""

    def _extract_images(self, soup: BeautifulSoup, base_url: str) -> List[str]:
        """Collect src, data-src and srcset candidates in document order."""
        candidates: List[str] = []
        for tag in soup.find_all(["img", "source"]):
            for attribute in ("src", "data-src"):
                value = tag.get(attribute)
                if value:
                    candidates.append(value.strip())
            srcset = tag.get("srcset") or tag.get("data-srcset")
            if srcset:
                for entry in srcset.split(","):
                    parts = entry.strip().split(" ")
                    if parts and parts[0]:
                        candidates.append(parts[0])

        images: List[str] = []
        for src in candidates:
            if "placeholder" in src.lower() or src.startswith("data:"):
                continue
            absolute = "https:" + src if src.startswith("//") else urljoin(base_url, src)
            if looks_like_image(absolute) and absolute not in images:
                images.append(absolute)
        return images

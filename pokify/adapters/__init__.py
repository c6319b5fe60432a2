"""Adapters package initialization."""
from pokify.adapters.html_scraper import HTMLScraper
from pokify.adapters.linkfy import LinkfyAdapter
from pokify.adapters.llm_client import ClaudeClient, VisionExtractor
from pokify.adapters.screenshot import BrowserPool, ScreenshotCapturer
from pokify.adapters.shopify import ShopifyAdapter

__all__ = [
    "HTMLScraper",
    "LinkfyAdapter",
    "ClaudeClient",
    "VisionExtractor",
    "BrowserPool",
    "ScreenshotCapturer",
    "ShopifyAdapter",
]

"""
Shopify Adapter for the Pokify import service.
Publishes imported products through the Shopify Admin REST API.
"""
import html
import re
from typing import Any, Dict, List, Optional

import httpx

from pokify.models.entities import Product, Review, Store
from pokify.utils.logger import LayerLogger


DEFAULT_INVENTORY_QUANTITY = 100
SIZE_OPTION_NAME = "Tamanho"


def shop_host(shop_url: str) -> str:
    """``https://loja.myshopify.com/`` -> ``loja.myshopify.com``"""
    return re.sub(r"^https?://", "", (shop_url or "").strip()).rstrip("/")


def _format_price(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return f"{float(value):.2f}"


def render_reviews_block(reviews: List[Review]) -> str:
    """Static reviews section appended to ``body_html`` on publish."""
    visible = [r for r in reviews if r.is_selected and r.is_published]
    if not visible:
        return ""

    items = []
    for review in visible:
        stars = "★" * review.rating + "☆" * (5 - review.rating)
        items.append(
            '<div class="pokify-review">'
            f'<p class="pokify-review-stars">{stars}</p>'
            f'<p class="pokify-review-author"><strong>{html.escape(review.author)}</strong></p>'
            f'<p class="pokify-review-content">{html.escape(review.content or "")}</p>'
            "</div>"
        )
    return '<div class="pokify-reviews"><h3>Avaliações</h3>' + "".join(items) + "</div>"


class ShopifyAdapter:
    """
    Shopify Admin REST client.
    Upstream failures are returned as ``{"success": False, "error": ...}``.
    """

    def __init__(
        self,
        api_version: str = "2025-01",
        timeout: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_version = api_version
        self.timeout = timeout
        self.transport = transport
        self.logger = LayerLogger("shopify_adapter")

    def _endpoint(self, shop_url: str, path: str, api_version: Optional[str] = None) -> str:
        version = api_version or self.api_version
        return f"https://{shop_host(shop_url)}/admin/api/{version}/{path}"

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"Shopify API error: status {response.status_code}"
        errors = body.get("errors") if isinstance(body, dict) else None
        if isinstance(errors, str):
            return errors
        if errors:
            return f"Shopify API error: {errors}"
        return f"Shopify API error: status {response.status_code}"

    async def verify_credentials(self, shop_url: str, access_token: str) -> Dict[str, Any]:
        """Check an access token against ``shop.json``."""
        endpoint = self._endpoint(shop_url, "shop.json")
        self.logger.log_action("verify_credentials", "started", shop=shop_host(shop_url))

        try:
            async with self._client() as client:
                response = await client.get(endpoint, headers=self._headers(access_token))
        except httpx.HTTPError as e:
            self.logger.log_error(f"Shopify request failed: {str(e)}", error_type="http_error")
            return {"valid": False, "message": str(e)}

        self.logger.log_http_call(
            url=shop_url,
            endpoint="shop.json",
            status_code=response.status_code,
            result="ok" if response.is_success else "error",
        )

        if not response.is_success:
            return {"valid": False, "message": self._error_message(response)}
        return {"valid": True, "shop": response.json().get("shop")}

    def build_product_payload(
        self,
        product: Product,
        reviews: Optional[List[Review]] = None,
    ) -> Dict[str, Any]:
        """
        Shape a stored product as a REST ``product`` resource.

        Size variants become one Shopify variant each, sharing the product
        price; without variants a single default variant is created.
        """
        body_html = product.description or ""
        if reviews:
            body_html += render_reviews_block(reviews)

        base_variant = {
            "price": _format_price(product.price),
            "compare_at_price": _format_price(product.compare_at_price),
            "sku": product.sku or f"IMPORT-{product.id[:8]}",
            "inventory_quantity": product.stock or DEFAULT_INVENTORY_QUANTITY,
            "inventory_management": "shopify",
        }

        payload: Dict[str, Any] = {
            "title": product.title,
            "body_html": body_html,
            "vendor": product.vendor or "",
            "product_type": product.product_type or "",
            "tags": ", ".join(product.tags or []),
            "status": "active",
            "images": [{"src": url, "alt": product.title} for url in (product.images or [])],
        }

        if product.variants:
            payload["options"] = [{"name": SIZE_OPTION_NAME, "values": list(product.variants)}]
            payload["variants"] = [
                dict(base_variant, option1=value, sku=f"{base_variant['sku']}-{value}")
                for value in product.variants
            ]
        else:
            payload["variants"] = [base_variant]

        return {"product": payload}

    async def publish_product(
        self,
        store: Store,
        product: Product,
        reviews: Optional[List[Review]] = None,
    ) -> Dict[str, Any]:
        """Create the product with POST ``products.json``."""
        if not store.url or not store.api_key:
            return {"success": False, "error": "Store URL or Shopify access token missing"}

        endpoint = self._endpoint(store.url, "products.json", store.api_version)
        payload = self.build_product_payload(product, reviews)
        return await self._send("POST", endpoint, store, payload, product_id=product.id)

    async def update_product(
        self,
        store: Store,
        shopify_product_id: str,
        product: Product,
        reviews: Optional[List[Review]] = None,
    ) -> Dict[str, Any]:
        """Replace the product with PUT ``products/{id}.json``."""
        if not store.url or not store.api_key:
            return {"success": False, "error": "Store URL or Shopify access token missing"}

        endpoint = self._endpoint(store.url, f"products/{shopify_product_id}.json", store.api_version)
        payload = self.build_product_payload(product, reviews)
        payload["product"]["id"] = int(shopify_product_id) if shopify_product_id.isdigit() else shopify_product_id
        return await self._send("PUT", endpoint, store, payload, product_id=product.id)

    async def _send(
        self,
        method: str,
        endpoint: str,
        store: Store,
        payload: Dict[str, Any],
        product_id: str,
    ) -> Dict[str, Any]:
        self.logger.log_action("shopify_product", "started", method=method, product_id=product_id)

        try:
            async with self._client() as client:
                response = await client.request(
                    method, endpoint, json=payload, headers=self._headers(store.api_key)
                )
        except httpx.HTTPError as e:
            self.logger.log_error(
                f"Shopify request failed: {str(e)}",
                error_type="http_error",
                product_id=product_id,
            )
            return {"success": False, "error": f"Shopify request failed: {str(e)}"}

        self.logger.log_http_call(
            url=store.url,
            endpoint=endpoint.split("/admin/api/")[-1],
            status_code=response.status_code,
            result="ok" if response.is_success else "error",
            method=method,
        )

        if not response.is_success:
            return {"success": False, "error": self._error_message(response)}

        created = response.json().get("product") or {}
        handle = created.get("handle") or ""
        return {
            "success": True,
            "shopify_product_id": str(created.get("id", "")),
            "product_url": f"https://{shop_host(store.url)}/products/{handle}" if handle else None,
        }

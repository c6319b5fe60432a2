"""
Unit tests for the Shopify adapter.
"""
import json

import httpx
import pytest

from pokify.adapters.shopify import ShopifyAdapter, render_reviews_block, shop_host
from pokify.layers import storage


BASE = "https://loja-teste.myshopify.com/admin/api/2025-01"


def adapter_for(handler) -> ShopifyAdapter:
    return ShopifyAdapter(transport=httpx.MockTransport(handler))


class TestPayload:

    def test_shop_host(self):
        assert shop_host("https://loja.myshopify.com/") == "loja.myshopify.com"
        assert shop_host("loja.myshopify.com") == "loja.myshopify.com"

    def test_size_variants(self, product):
        payload = ShopifyAdapter().build_product_payload(product)["product"]
        sku = f"IMPORT-{product.id[:8]}"

        assert payload["title"] == "Body Modelador"
        assert payload["options"] == [{"name": "Tamanho", "values": ["P", "M", "G"]}]
        assert [v["option1"] for v in payload["variants"]] == ["P", "M", "G"]
        assert [v["sku"] for v in payload["variants"]] == [f"{sku}-P", f"{sku}-M", f"{sku}-G"]
        assert {v["price"] for v in payload["variants"]} == {"129.90"}
        assert payload["variants"][0]["compare_at_price"] == "199.90"
        assert payload["variants"][0]["inventory_quantity"] == 100
        assert payload["images"][0] == {"src": "https://cdn.example.com/body-1.jpg", "alt": "Body Modelador"}

    def test_single_default_variant(self, session, store):
        product = storage.create_product(session, store.id, title="Cinta", price="59.9", sku="CINTA-1", stock=7)

        payload = ShopifyAdapter().build_product_payload(product)["product"]

        assert "options" not in payload
        assert payload["variants"] == [{
            "price": "59.90",
            "compare_at_price": None,
            "sku": "CINTA-1",
            "inventory_quantity": 7,
            "inventory_management": "shopify",
        }]

    def test_reviews_appended_to_body(self, session, product):
        shown = storage.create_review(
            session, product.id, author="<Ana>", rating=4, content="Ótimo", is_selected=True, is_published=True
        )
        hidden = storage.create_review(session, product.id, author="Oculta", rating=1, content="Ruim")

        payload = ShopifyAdapter().build_product_payload(product, [shown, hidden])["product"]

        assert payload["body_html"].startswith("<p>Body canelado</p>")
        assert "&lt;Ana&gt;" in payload["body_html"]
        assert "★★★★☆" in payload["body_html"]
        assert "Oculta" not in payload["body_html"]

    def test_reviews_block_empty(self):
        assert render_reviews_block([]) == ""


class TestPublish:

    @pytest.mark.asyncio
    async def test_publish_creates_product(self, store, product):
        def handler(request):
            assert request.method == "POST"
            assert str(request.url) == f"{BASE}/products.json"
            assert request.headers["x-shopify-access-token"] == "shpat_test"
            assert json.loads(request.content)["product"]["title"] == "Body Modelador"
            return httpx.Response(201, json={"product": {"id": 123, "handle": "body-modelador"}})

        result = await adapter_for(handler).publish_product(store, product)

        assert result == {
            "success": True,
            "shopify_product_id": "123",
            "product_url": "https://loja-teste.myshopify.com/products/body-modelador",
        }

    @pytest.mark.asyncio
    async def test_update_puts_by_id(self, store, product):
        def handler(request):
            assert request.method == "PUT"
            assert str(request.url) == f"{BASE}/products/123.json"
            assert json.loads(request.content)["product"]["id"] == 123
            return httpx.Response(200, json={"product": {"id": 123, "handle": "body"}})

        result = await adapter_for(handler).update_product(store, "123", product)
        assert result["success"]

    @pytest.mark.asyncio
    async def test_validation_errors_reported(self, store, product):
        def handler(request):
            return httpx.Response(422, json={"errors": {"title": ["can't be blank"]}})

        result = await adapter_for(handler).publish_product(store, product)

        assert not result["success"]
        assert "can't be blank" in result["error"]

    @pytest.mark.asyncio
    async def test_string_error(self, store, product):
        handler = lambda r: httpx.Response(401, json={"errors": "[API] Invalid API key or access token"})

        result = await adapter_for(handler).publish_product(store, product)
        assert result == {"success": False, "error": "[API] Invalid API key or access token"}

    @pytest.mark.asyncio
    async def test_network_error(self, store, product):
        def handler(request):
            raise httpx.ConnectError("dns failure", request=request)

        result = await adapter_for(handler).publish_product(store, product)

        assert not result["success"]
        assert result["error"].startswith("Shopify request failed")

    @pytest.mark.asyncio
    async def test_missing_credentials(self, session, store, product):
        storage.update_store(session, store.id, api_key=None)

        result = await adapter_for(lambda r: httpx.Response(500)).publish_product(store, product)
        assert result["error"] == "Store URL or Shopify access token missing"


class TestVerifyCredentials:

    @pytest.mark.asyncio
    async def test_valid(self):
        def handler(request):
            assert str(request.url) == f"{BASE}/shop.json"
            return httpx.Response(200, json={"shop": {"name": "Loja Teste"}})

        result = await adapter_for(handler).verify_credentials("https://loja-teste.myshopify.com", "shpat_test")
        assert result == {"valid": True, "shop": {"name": "Loja Teste"}}

    @pytest.mark.asyncio
    async def test_invalid(self):
        handler = lambda r: httpx.Response(401, text="unauthorized")

        result = await adapter_for(handler).verify_credentials("loja-teste.myshopify.com", "bad")

        assert not result["valid"]
        assert result["message"] == "Shopify API error: status 401"

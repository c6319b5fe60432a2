"""
Unit tests for the Linkfy adapter.

Uses httpx.MockTransport so no request leaves the process.
"""
import json

import httpx
import pytest

from pokify.adapters.linkfy import (
    LinkfyAdapter,
    find_images_in_payload,
    parse_price_info,
    parse_size_variants,
)


API_URL = "https://linkfy.test/api/extract"
PAGE_URL = "https://shop.example/products/x"


def adapter_for(handler, token="token", legacy_token=None) -> LinkfyAdapter:
    return LinkfyAdapter(
        api_url=API_URL,
        api_token=token,
        legacy_api_token=legacy_token,
        transport=httpx.MockTransport(handler),
    )


class TestPayloadParsing:
    """Test the pure parsing helpers."""

    def test_find_images_nested(self):
        payload = {
            "product": {
                "gallery": [{"src": "https://cdn/a.jpg"}, {"url": "https://cdn/b.jpg"}],
                "variants": [{"featured_image": {"src": "https://cdn/c.jpg"}}],
            },
            "extra": ["https://cdn/d.png", "not-an-image"],
        }
        assert find_images_in_payload(payload) == [
            "https://cdn/a.jpg",
            "https://cdn/b.jpg",
            "https://cdn/c.jpg",
            "https://cdn/d.png",
        ]

    def test_find_images_depth_limit(self):
        payload = {"images": ["https://cdn/top.jpg"]}
        for _ in range(8):
            payload = {"level": payload}
        assert find_images_in_payload(payload) == []

    def test_parse_price_info(self):
        markdown = "R$ 1.299,90\nR$ 1.599,90\n20% OFF\n12x de R$ 108,32"
        info = parse_price_info(markdown)

        assert info["price"] == "1299.90"
        assert info["original_price"] == "1599.90"
        assert info["discount_percentage"] == "20"
        assert info["installments"].count == 12
        assert info["installments"].value == "108.32"

    def test_parse_price_info_empty(self):
        info = parse_price_info("sem preço")
        assert info["price"] == ""
        assert info["installments"] is None

    def test_parse_size_variants(self):
        assert parse_size_variants("Tamanho\nG\nP\nM\n") == ["P", "M", "G"]


class TestExtractMarkdown:
    """Test the current markdown contract."""

    @pytest.mark.asyncio
    async def test_data_list_shape(self):
        def handler(request):
            assert request.headers["api-token"] == "token"
            assert json.loads(request.content) == {"url": PAGE_URL}
            return httpx.Response(200, json={
                "data": [{"title": "X", "markdown": "# X", "images": ["https://cdn/a.jpg"]}],
            })

        output = await adapter_for(handler).extract_markdown(PAGE_URL)

        assert output.success
        assert output.data.title == "X"
        assert output.data.markdown == "# X"
        assert output.data.images == ["https://cdn/a.jpg"]

    @pytest.mark.asyncio
    async def test_flat_shape_with_images_found_in_payload(self):
        def handler(request):
            return httpx.Response(200, json={
                "content": "conteúdo",
                "media": [{"src": "https://cdn/m.jpg"}],
            })

        output = await adapter_for(handler).extract_markdown(PAGE_URL)

        assert output.success
        assert output.data.markdown == "conteúdo"
        assert output.data.images == ["https://cdn/m.jpg"]

    @pytest.mark.asyncio
    async def test_data_object_shape(self):
        def handler(request):
            return httpx.Response(200, json={"data": {"text": "texto"}})

        output = await adapter_for(handler).extract_markdown(PAGE_URL)
        assert output.success
        assert output.data.markdown == "texto"

    @pytest.mark.asyncio
    async def test_missing_markdown_is_failure(self):
        output = await adapter_for(lambda r: httpx.Response(200, json={"data": {}})).extract_markdown(PAGE_URL)
        assert not output.success
        assert "Markdown not found" in output.error

    @pytest.mark.asyncio
    async def test_http_error_is_failure(self):
        output = await adapter_for(lambda r: httpx.Response(503)).extract_markdown(PAGE_URL)
        assert not output.success
        assert "Linkfy API error" in output.error

    @pytest.mark.asyncio
    async def test_network_error_is_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        output = await adapter_for(handler).extract_markdown(PAGE_URL)
        assert not output.success
        assert "connection refused" in output.error

    @pytest.mark.asyncio
    async def test_no_token_skips_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        output = await adapter_for(handler, token=None).extract_markdown(PAGE_URL)
        assert not output.success
        assert calls == []


class TestExtractProduct:
    """Test the legacy structured contract."""

    @pytest.mark.asyncio
    async def test_parses_markdown_text(self):
        markdown = "# Body\n![foto](https://cdn/body.jpg)\nR$ 129,90\nR$ 199,90\n35% OFF\nP\nM\n"

        def handler(request):
            assert request.headers["api-token"] == "legacy"
            return httpx.Response(200, json={"data": {"title": "Body", "markdownText": markdown}})

        product = await adapter_for(handler, legacy_token="legacy").extract_product(PAGE_URL)

        assert product.title == "Body"
        assert product.price == "129.90"
        assert product.original_price == "199.90"
        assert product.discount_percentage == "35"
        assert product.image_url == "https://cdn/body.jpg"
        assert product.variants == ["P", "M"]

    @pytest.mark.asyncio
    async def test_missing_markdown_text_returns_none(self):
        product = await adapter_for(lambda r: httpx.Response(200, json={"data": {}})).extract_product(PAGE_URL)
        assert product is None

    @pytest.mark.asyncio
    async def test_http_error_returns_none(self):
        product = await adapter_for(lambda r: httpx.Response(500)).extract_product(PAGE_URL)
        assert product is None

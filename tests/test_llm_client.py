"""
Unit tests for the Claude wrapper and the vision/text extractor.

Model output is faked at the ``messages.create`` level.
"""
import pytest

from pokify.adapters.llm_client import (
    ClaudeClient,
    VisionExtractor,
    build_extracted_product,
    extract_json_block,
    loads_lenient,
    normalize_image_list,
    regex_fallback,
    repair_truncated_json,
)
from pokify.errors import ServiceUnavailable
from tests.conftest import FakeAnthropic, fake_claude


PAGE_URL = "https://shop.example/products/x"


class TestJsonHandling:
    """Test locating and repairing JSON in model output."""

    def test_extract_from_code_fence(self):
        content = 'Here you go:\n```json\n{"title": "X"}\n```\nThanks'
        assert extract_json_block(content) == '{"title": "X"}'

    def test_extract_from_surrounding_text(self):
        assert extract_json_block('Resultado: {"a": 1} fim') == '{"a": 1}'

    def test_repair_truncated_object(self):
        truncated = '{"title": "Body", "mainImages": ["https://cdn/a.jpg", "https://cdn/b.jp'
        repaired = repair_truncated_json(truncated)

        assert repaired["title"] == "Body"
        assert repaired["mainImages"] == ["https://cdn/a.jpg"]

    def test_repair_rejects_non_json(self):
        assert repair_truncated_json("no json here") is None

    def test_loads_lenient_valid_and_truncated(self):
        assert loads_lenient('{"price": "10,00"}') == {"price": "10,00"}
        assert loads_lenient('[{"a": "1"}, {"a": "2"')[0] == {"a": "1"}
        assert loads_lenient("") is None

    def test_regex_fallback(self):
        broken = 'title: "x" "title": "Body \\"Premium\\"", "price": "99,90", "mainImages": ["//cdn/a.jpg", "https://cdn/b.jpg" oops'
        data = regex_fallback(broken)

        assert data["title"] == 'Body "Premium"'
        assert data["price"] == "99,90"
        assert data["mainImages"] == ["//cdn/a.jpg", "https://cdn/b.jpg"]

    def test_regex_fallback_nothing_useful(self):
        assert regex_fallback('"price": "10"') is None


class TestImageNormalization:

    def test_normalize_image_list(self):
        urls = [
            "//cdn.example/a.jpg",
            "/files/b.png",
            {"src": "https://cdn.example/c.webp"},
            "https://cdn.example/placeholder.jpg",
            "https://cdn.example/a.jpg",
            "https://cdn.example/page.html",
            "https://loja.com/cdn/shop/files/noext",
            42,
        ]
        assert normalize_image_list(urls, PAGE_URL) == [
            "https://cdn.example/a.jpg",
            "https://shop.example/files/b.png",
            "https://cdn.example/c.webp",
            "https://loja.com/cdn/shop/files/noext",
        ]

    def test_non_list(self):
        assert normalize_image_list("https://cdn/a.jpg") == []

    def test_build_extracted_product(self):
        product = build_extracted_product({
            "title": "X",
            "price": 10,
            "variants": [{"name": "P"}, "M", ""],
            "mainImages": ["https://cdn/a.jpg"],
            "descriptionImages": ["https://cdn/d.jpg", "https://cdn/a.jpg"],
        })

        assert product.price == "10"
        assert product.variants == ["P", "M"]
        assert product.images == ["https://cdn/a.jpg", "https://cdn/d.jpg"]


class TestClaudeClient:

    @pytest.mark.asyncio
    async def test_unconfigured_raises(self):
        client = ClaudeClient(api_key=None)
        assert not client.is_available()
        with pytest.raises(ServiceUnavailable):
            await client.complete("hi")

    @pytest.mark.asyncio
    async def test_image_block_sent_first(self):
        fake = FakeAnthropic("ok")
        client = ClaudeClient(client=fake)

        assert await client.complete("prompt", image_base64="aGVsbG8=") == "ok"

        content = fake.messages.calls[0]["messages"][0]["content"]
        assert content[0]["type"] == "image"
        assert content[0]["source"]["media_type"] == "image/jpeg"
        assert content[1] == {"type": "text", "text": "prompt"}


class TestVisionExtractor:

    @pytest.mark.asyncio
    async def test_standard_mode(self):
        claude = fake_claude({"title": "X", "price": "10,00", "mainImages": []})
        result = await VisionExtractor(claude).extract(PAGE_URL, "# X\n" * 5000)

        assert result.success
        assert result.data.title == "X"
        call = claude.client.messages.calls[0]
        assert call["model"] == ClaudeClient.MODEL_FAST
        assert call["max_tokens"] == 4000

    @pytest.mark.asyncio
    async def test_pro_copy_mode_with_screenshot(self):
        claude = fake_claude('```json\n{"title": "Y"}\n```')
        result = await VisionExtractor(claude).extract(PAGE_URL, "markdown", screenshot="aGk=", mode="pro_copy")

        assert result.success
        call = claude.client.messages.calls[0]
        assert call["model"] == ClaudeClient.MODEL_QUALITY
        assert call["temperature"] == 0.7
        assert call["messages"][0]["content"][0]["type"] == "image"

    @pytest.mark.asyncio
    async def test_unparseable_response_is_failure(self):
        result = await VisionExtractor(fake_claude("desculpe, não consegui")).extract(PAGE_URL, "md")
        assert not result.success
        assert result.error == "Invalid AI response format"

    @pytest.mark.asyncio
    async def test_unconfigured_is_failure_value(self):
        result = await VisionExtractor(ClaudeClient(api_key=None)).extract(PAGE_URL, "md")
        assert not result.success
        assert result.error == "AI service is not configured"

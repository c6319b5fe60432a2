"""
Unit tests for the AI enhancement layer.

Covers language detection, the translation cache and per-item error
reporting in the bulk operations.
"""
from datetime import date

import anthropic
import httpx
import pytest

from pokify.adapters.llm_client import ClaudeClient
from pokify.errors import MalformedResponseError, ServiceUnavailable, ValidationFailure
from pokify.layers.ai_enhancement import (
    MAX_GENERATED_REVIEWS,
    AIEnhancementLayer,
    TranslationCache,
    detect_language,
    language_name,
)
from tests.conftest import fake_claude


def api_error() -> anthropic.APIConnectionError:
    return anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))


def layer_with(replies) -> AIEnhancementLayer:
    return AIEnhancementLayer(fake_claude(replies))


class TestLanguageDetection:

    def test_detects_common_languages(self):
        assert detect_language("the product is great and it works for me") == "en"
        assert detect_language("o produto é ótimo e chegou no prazo") == "pt"
        assert detect_language("el producto es muy bueno y llegó con la caja") == "es"

    def test_no_signal_defaults_to_portuguese(self):
        assert detect_language("") == "pt"
        assert detect_language("12345 !!!") == "pt"

    def test_language_name(self):
        assert language_name("en") == "English"
        assert language_name("Klingon") == "Klingon"


class TestTranslationCache:

    def test_lru_eviction(self):
        cache = TranslationCache(max_size=2)
        cache.put("a", "en", "A")
        cache.put("b", "en", "B")
        assert cache.get("a", "en") == "A"

        cache.put("c", "en", "C")

        assert len(cache) == 2
        assert cache.get("b", "en") is None
        assert cache.get("a", "en") == "A"
        assert cache.get("c", "en") == "C"

    def test_key_includes_target(self):
        cache = TranslationCache()
        cache.put("olá", "en", "hello")
        assert cache.get("olá", "es") is None


class TestUnavailable:

    @pytest.mark.asyncio
    async def test_every_operation_needs_ai(self):
        layer = AIEnhancementLayer(ClaudeClient(api_key=None))
        assert not layer.is_available()

        with pytest.raises(ServiceUnavailable):
            await layer.improve_description("Body", "desc")
        with pytest.raises(ServiceUnavailable):
            await layer.generate_reviews("Body")
        with pytest.raises(ServiceUnavailable):
            await layer.translate("olá", "en")
        with pytest.raises(ServiceUnavailable):
            await layer.enhance_reviews([{"id": "1", "content": "bom"}])


class TestImproveDescription:

    @pytest.mark.asyncio
    async def test_returns_unfenced_html(self):
        layer = layer_with("```html\n<h2>Body</h2><p>Copy</p>\n```")

        improved = await layer.improve_description("Body", "<p>Body canelado</p>")

        assert improved == "<h2>Body</h2><p>Copy</p>"
        call = layer.claude.client.messages.calls[0]
        assert call["model"] == ClaudeClient.MODEL_QUALITY
        assert "Body canelado" in call["messages"][0]["content"][-1]["text"]

    @pytest.mark.asyncio
    async def test_requires_input(self):
        with pytest.raises(ValidationFailure):
            await layer_with("x").improve_description("", "")


class TestEnhanceReviews:

    @pytest.mark.asyncio
    async def test_per_item_errors(self):
        def reply(kwargs):
            prompt = kwargs["messages"][0]["content"][-1]["text"]
            return api_error() if "ruim" in prompt else "Produto excelente, recomendo."

        reviews = [
            {"id": "r1", "content": "produto exelente recomendo"},
            {"id": "r2", "content": "ruim"},
            {"id": "r3", "content": "  "},
        ]

        results = await layer_with(reply).enhance_reviews(reviews, product_name="Body")

        assert [r["id"] for r in results] == ["r1", "r2", "r3"]
        assert results[0]["enhanced_content"] == "Produto excelente, recomendo."
        assert results[1]["error"].startswith("Claude API error")
        assert results[2]["error"] == "Review has no content"


class TestGenerateReviews:

    @pytest.mark.asyncio
    async def test_wrapped_array_and_clamping(self):
        layer = layer_with({"reviews": [
            {"author": "Ana S.", "rating": 9, "content": "Amei!"},
            {"author": "", "rating": "x", "text": "Muito bom"},
            {"author": "Sem texto", "rating": 5},
            {"author": "Bia R.", "rating": 2, "content": "Ok", "date": "2024-01-05"},
        ]})

        reviews = await layer.generate_reviews("Body", count=500, min_rating=4, max_rating=5)

        assert [r["author"] for r in reviews] == ["Ana S.", "Cliente", "Bia R."]
        assert [r["rating"] for r in reviews] == [5, 5, 4]
        assert reviews[0]["date"] == date.today().isoformat()
        assert reviews[2]["date"] == "2024-01-05"
        assert reviews[1]["content"] == "Muito bom"

        call = layer.claude.client.messages.calls[0]
        assert f"Write {MAX_GENERATED_REVIEWS} realistic" in call["messages"][0]["content"][-1]["text"]
        assert call["max_tokens"] == 8000

    @pytest.mark.asyncio
    async def test_truncates_to_count(self):
        layer = layer_with([{"author": f"A{i}", "rating": 5, "content": "bom"} for i in range(5)])

        reviews = await layer.generate_reviews("Body", count=2)
        assert len(reviews) == 2

    @pytest.mark.asyncio
    async def test_non_array_payload_raises(self):
        with pytest.raises(MalformedResponseError):
            await layer_with("sem json").generate_reviews("Body")


class TestTranslate:

    @pytest.mark.asyncio
    async def test_cache_hit_skips_api(self):
        layer = layer_with("Hello")

        assert await layer.translate("Olá", "en") == "Hello"
        assert await layer.translate("Olá", "en") == "Hello"
        assert len(layer.claude.client.messages.calls) == 1

    @pytest.mark.asyncio
    async def test_blank_text_returned_as_is(self):
        layer = layer_with("never")
        assert await layer.translate("   ", "en") == "   "
        assert layer.claude.client.messages.calls == []

    @pytest.mark.asyncio
    async def test_line_count_fallback(self):
        text = "Linha um\n\nLinha três"

        def reply(kwargs):
            prompt = kwargs["messages"][0]["content"][-1]["text"]
            if prompt.endswith(text):
                return "Line one Line three"
            if prompt.endswith("Linha um"):
                return "Line one"
            return "Line three"

        layer = layer_with(reply)
        translated = await layer.translate(text, "en", source_language="pt")

        assert translated == "Line one\n\nLine three"
        assert len(layer.claude.client.messages.calls) == 3
        assert "from Português to English" in layer.claude.client.messages.calls[0]["messages"][0]["content"][-1]["text"]

    @pytest.mark.asyncio
    async def test_batch_reports_errors(self):
        def reply(kwargs):
            prompt = kwargs["messages"][0]["content"][-1]["text"]
            return api_error() if prompt.endswith("falha") else "ok"

        results = await layer_with(reply).translate_batch(["um", "falha"], "en")

        assert results[0] == {"original": "um", "translated": "ok"}
        assert results[1]["original"] == "falha"
        assert "error" in results[1]

    @pytest.mark.asyncio
    async def test_translate_reviews(self):
        results = await layer_with("Great").translate_reviews(
            [{"id": "r1", "content": "Ótimo"}, {"id": "r2", "content": ""}],
            "en",
        )

        assert results == [
            {"id": "r1", "translated_content": "Great"},
            {"id": "r2", "error": "Review has no content"},
        ]

"""
AI Enhancement Layer for the Pokify import service.
Copywriting, review generation/enhancement and translation on top of Claude.

COMPREHENSIVE LOGGING:
- Every operation logged with input sizes and outcome
- Per-item failures reported, never silently dropped
"""
import asyncio
import re
from collections import OrderedDict
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pokify.adapters.llm_client import ClaudeClient, loads_lenient
from pokify.errors import MalformedResponseError, ServiceUnavailable, UpstreamServiceError, ValidationFailure
from pokify.utils.logger import LayerLogger


REVIEW_BATCH_SIZE = 20
TRANSLATION_BATCH_SIZE = 10
TRANSLATION_CACHE_SIZE = 100
MAX_GENERATED_REVIEWS = 100

LANGUAGE_NAMES = {
    "pt": "Português",
    "en": "English",
    "es": "Español",
    "fr": "Français",
    "de": "Deutsch",
    "it": "Italiano",
    "zh": "Chinese",
    "ja": "Japanese",
    "ko": "Korean",
    "ru": "Russian",
    "ar": "Arabic",
}

COMMON_WORDS = {
    "pt": ["de", "para", "com", "e", "ou", "em", "um", "uma", "o", "a", "os", "as", "no", "na", "nos", "nas"],
    "en": ["the", "of", "and", "to", "in", "a", "is", "that", "for", "it", "with", "as", "was", "on"],
    "es": ["el", "la", "los", "las", "de", "en", "y", "a", "que", "por", "con", "para", "un", "una"],
    "fr": ["le", "la", "les", "de", "des", "et", "en", "un", "une", "du", "qui", "que", "dans", "pour"],
    "de": ["der", "die", "das", "und", "in", "zu", "den", "mit", "von", "für", "auf", "ist", "im", "dem"],
    "it": ["il", "la", "i", "le", "di", "e", "che", "a", "in", "un", "una", "per", "con", "su"],
}

COPYWRITER_SYSTEM = """You are a senior e-commerce copywriter for Brazilian online stores.
Write in the same language as the product information you receive.
Never invent specifications, certifications or guarantees that are not in the input.
Return only the requested content, with no preamble."""

IMPROVE_DESCRIPTION_PROMPT = """Rewrite this product description as persuasive sales copy using the AIDA structure
(Attention, Interest, Desire, Action).

Format the result as HTML using <h2>, <p>, <ul> and <li>. Keep every factual detail
and every <img> tag from the original description.

Product: {title}

Current description:
{description}"""

ENHANCE_REVIEW_PROMPT = """Improve this customer review of "{product_name}".
Fix spelling and grammar and make it read naturally, keeping the same language,
tone, rating sentiment and every concrete detail. Do not make it longer than
twice the original.

Review:
{content}

Return only the improved review text."""

GENERATE_REVIEWS_PROMPT = """Write {count} realistic customer reviews in {language} for the product below.

Rules:
- Vary length, tone and writing style; some short, some detailed
- Ratings between {min_rating} and {max_rating}
- Use common first names with a last initial as authors
- Mention concrete aspects taken from the product description only

Product: {title}

Description:
{description}

Return a JSON array of objects with keys "author", "rating", "content"."""

TRANSLATE_SYSTEM = """You are a professional translator for e-commerce content.
Translate faithfully, preserving tone, HTML tags, numbers, and line breaks.
Return only the translation."""

TRANSLATE_PROMPT = """Translate the text below{source} to {target}.
Keep exactly the same number of lines; empty lines stay empty.

{text}"""


def detect_language(text: str) -> str:
    """
    Guess the language of ``text`` from common-word frequency.

    Scores are normalized by each language's word-list size; ties keep
    the earlier language and no signal at all means Portuguese.
    """
    normalized = re.sub(r"[.,/#!$%^&*;:{}=\-_`~()]", "", (text or "").lower())
    words = normalized.split()

    detected = "pt"
    highest = 0.0
    for language, common in COMMON_WORDS.items():
        hits = sum(1 for word in words if word in common)
        score = hits / len(common)
        if score > highest:
            highest = score
            detected = language
    return detected


def language_name(code_or_name: str) -> str:
    return LANGUAGE_NAMES.get(code_or_name, code_or_name)


def _strip_fences(text: str) -> str:
    text = text.strip()
    fenced = re.match(r"^```[a-zA-Z]*\s*([\s\S]*?)```$", text)
    return fenced.group(1).strip() if fenced else text


class TranslationCache:
    """Bounded LRU of translations keyed by (text, target language)."""

    def __init__(self, max_size: int = TRANSLATION_CACHE_SIZE):
        self.max_size = max_size
        self._items: "OrderedDict[Tuple[str, str], str]" = OrderedDict()

    def get(self, text: str, target: str) -> Optional[str]:
        key = (text, target)
        if key not in self._items:
            return None
        self._items.move_to_end(key)
        return self._items[key]

    def put(self, text: str, target: str, translated: str):
        key = (text, target)
        self._items[key] = translated
        self._items.move_to_end(key)
        while len(self._items) > self.max_size:
            self._items.popitem(last=False)

    def __len__(self) -> int:
        return len(self._items)


class AIEnhancementLayer:
    """
    AI content services.

    Principles:
    - Every operation needs a configured AI client (503 otherwise)
    - Bulk operations report per-item outcomes
    - Batches run concurrently inside a batch, batches run in sequence
    """

    def __init__(self, claude: ClaudeClient, cache: Optional[TranslationCache] = None):
        self.logger = LayerLogger("ai_enhancement")
        self.claude = claude
        self.cache = cache or TranslationCache()

    def is_available(self) -> bool:
        """Check if AI enhancement is available."""
        return self.claude.is_available()

    def _require_available(self, operation: str):
        if not self.is_available():
            self.logger.log_action(operation, "aborted", reason="claude_not_available")
            raise ServiceUnavailable("AI service is not configured")

    async def improve_description(self, title: str, description: str) -> str:
        """Rewrite a description as AIDA-structured HTML copy."""
        self._require_available("improve_description")
        if not description and not title:
            raise ValidationFailure("Title or description is required")

        self.logger.log_action(
            "improve_description",
            "started",
            title=title[:80],
            description_length=len(description or ""),
        )
        improved = await self.claude.complete(
            IMPROVE_DESCRIPTION_PROMPT.format(title=title, description=description or ""),
            system=COPYWRITER_SYSTEM,
            model=ClaudeClient.MODEL_QUALITY,
            max_tokens=4000,
            temperature=0.7,
        )
        improved = _strip_fences(improved)
        self.logger.log_action("improve_description", "completed", output_length=len(improved))
        return improved

    async def _enhance_one(self, review: Dict[str, Any], product_name: str) -> Dict[str, Any]:
        review_id = review.get("id")
        content = (review.get("content") or "").strip()
        if not content:
            return {"id": review_id, "error": "Review has no content"}
        try:
            enhanced = await self.claude.complete(
                ENHANCE_REVIEW_PROMPT.format(product_name=product_name, content=content),
                system=COPYWRITER_SYSTEM,
                max_tokens=1000,
                temperature=0.5,
            )
        except UpstreamServiceError as e:
            self.logger.log_error(f"Review enhancement failed: {e.message}", error_type="api_error", review_id=review_id)
            return {"id": review_id, "error": e.message}
        return {"id": review_id, "enhanced_content": _strip_fences(enhanced)}

    async def enhance_reviews(
        self,
        reviews: List[Dict[str, Any]],
        product_name: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Improve review texts in batches of 20.

        Returns:
            One ``{id, enhanced_content}`` or ``{id, error}`` per review, in order
        """
        self._require_available("enhance_reviews")
        product_name = product_name or "this product"
        self.logger.log_action("enhance_reviews", "started", reviews=len(reviews))

        results: List[Dict[str, Any]] = []
        for start in range(0, len(reviews), REVIEW_BATCH_SIZE):
            batch = reviews[start:start + REVIEW_BATCH_SIZE]
            results.extend(await asyncio.gather(*(self._enhance_one(r, product_name) for r in batch)))

        failed = sum(1 for r in results if "error" in r)
        self.logger.log_action("enhance_reviews", "completed", enhanced=len(results) - failed, failed=failed)
        return results

    async def generate_reviews(
        self,
        title: str,
        description: str = "",
        count: int = 5,
        language: str = "português",
        min_rating: int = 3,
        max_rating: int = 5,
    ) -> List[Dict[str, Any]]:
        """
        Generate synthetic reviews.

        Returns:
            Up to ``count`` dicts with author, rating, date and content
        """
        self._require_available("generate_reviews")

        count = max(1, min(int(count or 1), MAX_GENERATED_REVIEWS))
        min_rating = max(1, min(int(min_rating), 5))
        max_rating = max(min_rating, min(int(max_rating), 5))

        self.logger.log_action("generate_reviews", "started", count=count, language=language)

        content = await self.claude.complete(
            GENERATE_REVIEWS_PROMPT.format(
                count=count,
                language=language_name(language),
                min_rating=min_rating,
                max_rating=max_rating,
                title=title,
                description=(description or "")[:4000],
            ),
            system=COPYWRITER_SYSTEM,
            model=ClaudeClient.MODEL_QUALITY,
            max_tokens=min(8000, 300 * count + 500),
            temperature=0.9,
        )

        parsed = loads_lenient(content)
        if isinstance(parsed, dict):
            parsed = next((v for v in parsed.values() if isinstance(v, list)), None)
        if not isinstance(parsed, list):
            self.logger.log_error("Generated reviews are not a JSON array", error_type="malformed_response")
            raise MalformedResponseError("AI service returned an invalid reviews payload")

        today = date.today()
        reviews: List[Dict[str, Any]] = []
        for index, item in enumerate(parsed[:count]):
            if not isinstance(item, dict) or not (item.get("content") or item.get("text")):
                continue
            try:
                rating = int(round(float(item.get("rating", max_rating))))
            except (TypeError, ValueError):
                rating = max_rating
            reviews.append({
                "author": str(item.get("author") or "Cliente").strip(),
                "rating": max(min_rating, min(rating, max_rating)),
                "date": str(item.get("date") or (today - timedelta(days=index * 3)).isoformat()),
                "content": str(item.get("content") or item.get("text")).strip(),
            })

        self.logger.log_action("generate_reviews", "completed", requested=count, generated=len(reviews))
        return reviews

    async def translate(
        self,
        text: str,
        target_language: str,
        source_language: Optional[str] = None,
    ) -> str:
        """
        Translate ``text``, keeping its line structure.

        When the model merges or splits lines, each non-empty line is
        translated on its own instead.
        """
        self._require_available("translate")
        if not text or not text.strip():
            return text or ""

        cached = self.cache.get(text, target_language)
        if cached is not None:
            self.logger.log_action("translate", "cache_hit", target=target_language, length=len(text))
            return cached

        translated = await self._translate_block(text, target_language, source_language)
        if translated.count("\n") != text.count("\n"):
            self.logger.log_fallback(
                from_source="block_translation",
                to_source="line_translation",
                reason="line count changed",
                target=target_language,
            )
            lines = text.split("\n")
            translated_lines = await asyncio.gather(*(
                self._translate_block(line, target_language, source_language) if line.strip() else self._keep(line)
                for line in lines
            ))
            translated = "\n".join(line.replace("\n", " ") for line in translated_lines)

        self.cache.put(text, target_language, translated)
        self.logger.log_action("translate", "completed", target=target_language, length=len(translated))
        return translated

    @staticmethod
    async def _keep(line: str) -> str:
        return line

    async def _translate_block(self, text: str, target: str, source: Optional[str]) -> str:
        result = await self.claude.complete(
            TRANSLATE_PROMPT.format(
                source=f" from {language_name(source)}" if source else "",
                target=language_name(target),
                text=text,
            ),
            system=TRANSLATE_SYSTEM,
            max_tokens=4000,
            temperature=0.3,
        )
        return _strip_fences(result)

    async def translate_batch(self, texts: List[str], target_language: str) -> List[Dict[str, Any]]:
        """Translate several texts; one ``{original, translated|error}`` each."""
        self._require_available("translate_batch")

        async def one(text: str) -> Dict[str, Any]:
            try:
                return {"original": text, "translated": await self.translate(text, target_language)}
            except UpstreamServiceError as e:
                return {"original": text, "error": e.message}

        results: List[Dict[str, Any]] = []
        for start in range(0, len(texts), TRANSLATION_BATCH_SIZE):
            batch = texts[start:start + TRANSLATION_BATCH_SIZE]
            results.extend(await asyncio.gather(*(one(t) for t in batch)))
        return results

    async def translate_reviews(
        self,
        reviews: List[Dict[str, Any]],
        target_language: str,
    ) -> List[Dict[str, Any]]:
        """Translate review contents; one ``{id, translated_content|error}`` each."""
        self._require_available("translate_reviews")

        async def one(review: Dict[str, Any]) -> Dict[str, Any]:
            review_id = review.get("id")
            content = review.get("content") or ""
            if not content.strip():
                return {"id": review_id, "error": "Review has no content"}
            try:
                return {"id": review_id, "translated_content": await self.translate(content, target_language)}
            except UpstreamServiceError as e:
                return {"id": review_id, "error": e.message}

        results: List[Dict[str, Any]] = []
        for start in range(0, len(reviews), TRANSLATION_BATCH_SIZE):
            batch = reviews[start:start + TRANSLATION_BATCH_SIZE]
            results.extend(await asyncio.gather(*(one(r) for r in batch)))

        self.logger.log_action(
            "translate_reviews",
            "completed",
            reviews=len(reviews),
            failed=sum(1 for r in results if "error" in r),
        )
        return results

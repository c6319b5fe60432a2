"""
Product extraction models for the Pokify import service.
These models carry transient pipeline state: nothing here is persisted until
the caller decides to store the final ProductData.
"""
from typing import Dict, List, Optional, Any
from enum import Enum
from pydantic import BaseModel, Field


class ExtractorStrategy(str, Enum):
    """Extractor strategies, evaluated in order by the orchestrator."""
    PRIMARY = "primary"  # Linkfy markdown API
    DIRECT = "direct"    # Raw page fetch
    LEGACY = "legacy"    # Linkfy structured product endpoint


class ExtractionMode(str, Enum):
    """Prompt/model tier used by the vision extractor."""
    STANDARD = "standard"
    PRO_COPY = "pro_copy"


class ExtractedPage(BaseModel):
    """Markdown and image list produced by an extractor."""
    title: str = ""
    description: str = ""
    markdown: str = ""
    images: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExtractorOutput(BaseModel):
    """Result value returned by every extractor adapter."""
    success: bool
    data: Optional[ExtractedPage] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "ExtractorOutput":
        return cls(success=False, error=error)


class Installments(BaseModel):
    """Installment plan advertised next to the price (e.g. 12x de R$ 10,00)."""
    count: int
    value: str


class LegacyProduct(BaseModel):
    """Structured product returned by the legacy Linkfy extractor."""
    title: str = ""
    description: str = ""
    markdown: str = ""
    price: str = ""
    original_price: str = ""
    discount_percentage: str = ""
    currency: str = "BRL"
    image_url: str = ""
    url: str = ""
    installments: Optional[Installments] = None
    variants: List[str] = Field(default_factory=list)


class ExtractedProduct(BaseModel):
    """Product fields returned by the vision/text extractor."""
    title: str = ""
    description: str = ""
    price: str = ""
    original_price: str = ""
    discount_percentage: str = ""
    currency: str = ""
    variants: List[str] = Field(default_factory=list)
    main_images: List[str] = Field(default_factory=list)
    description_images: List[str] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)


class LLMExtraction(BaseModel):
    """Result value returned by the vision/text extractor."""
    success: bool
    data: Optional[ExtractedProduct] = None
    error: Optional[str] = None


class ProductData(BaseModel):
    """
    Final product assembled by the orchestrator.

    `form_markdown` is the synthesized block the import form parses with
    regexes; `images` is always re-derived from it.
    """
    url: str
    title: str = ""
    description: str = ""
    price: str = ""
    original_price: str = ""
    discount_percentage: str = ""
    currency: str = ""
    variants: List[str] = Field(default_factory=list)
    main_images: List[str] = Field(default_factory=list)
    description_images: List[str] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)
    form_markdown: str = ""

    def get_present_fields(self) -> List[str]:
        """Get list of fields that have values."""
        present = []
        for name in ("title", "description", "price", "original_price",
                     "discount_percentage", "currency", "variants", "images"):
            if getattr(self, name):
                present.append(name)
        return present

    def get_missing_fields(self) -> List[str]:
        """Get list of fields that are missing."""
        present = set(self.get_present_fields())
        return [name for name in ("title", "description", "price", "images")
                if name not in present]


class ExtractionResult(BaseModel):
    """Outcome of one orchestrator run."""
    success: bool
    data: Optional[ProductData] = None
    error: Optional[str] = None
    source: Optional[ExtractorStrategy] = None
    attempts: Dict[str, str] = Field(default_factory=dict)
    used_screenshot: bool = False
    ai_extracted: bool = False
    processing_time_ms: int = 0

"""Layers package initialization."""
from pokify.layers.reconciler import DescriptionReconciler, HalfSplitSelection, NoSelection
from pokify.layers.extraction import ExtractionLayer
from pokify.layers.ai_enhancement import AIEnhancementLayer, TranslationCache
from pokify.layers.jobs import JobQueue

__all__ = [
    "DescriptionReconciler",
    "HalfSplitSelection",
    "NoSelection",
    "ExtractionLayer",
    "AIEnhancementLayer",
    "TranslationCache",
    "JobQueue",
]

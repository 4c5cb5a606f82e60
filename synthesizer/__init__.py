"""
SG Weather Pipeline - Synthesizer Module
Regional composites with explicit quality/freshness.
"""

from .regional import (
    RegionalSynthesizer,
    classify_quality,
    compute_regional,
    feels_like,
)

__all__ = [
    "RegionalSynthesizer",
    "classify_quality",
    "compute_regional",
    "feels_like",
]

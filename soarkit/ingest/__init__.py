"""
Indicator Ingest for SOARKit.
Normalizes alerts and IoCs from heterogeneous sources into one schema.
"""

from soarkit.ingest.indicator import Indicator, IndicatorType, IndicatorSource
from soarkit.ingest.normalizer import IndicatorIngest

__all__ = [
    "Indicator",
    "IndicatorType",
    "IndicatorSource",
    "IndicatorIngest",
]

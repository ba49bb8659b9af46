"""
Layer 2 – Image Readjustment
Card detection, perspective correction to the canonical ID-1 size,
binarization and named region crops.
"""
from .processor import (
    ID1_ASPECT_RATIO,
    CardGeometry,
    GeometryConfig,
    GeometryNormalizer,
    NormalizationResult,
    NormalizedCard,
    order_corners,
)
from .regions import (
    BACK_REGIONS,
    FRONT_REGIONS,
    RegionId,
    RegionSpec,
    extract_region,
)

__all__ = [
    'ID1_ASPECT_RATIO',
    'CardGeometry',
    'GeometryConfig',
    'GeometryNormalizer',
    'NormalizationResult',
    'NormalizedCard',
    'order_corners',
    'BACK_REGIONS',
    'FRONT_REGIONS',
    'RegionId',
    'RegionSpec',
    'extract_region',
]

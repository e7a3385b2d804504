"""zip-strip: canonicalize ZIP archives for reproducible builds."""

from .config import SAFE_EPOCH, NormalizerConfig
from .normalizer import NormalizationResult, normalize_archive

__all__ = ["SAFE_EPOCH", "NormalizerConfig", "NormalizationResult", "normalize_archive"]

__version__ = "0.1"

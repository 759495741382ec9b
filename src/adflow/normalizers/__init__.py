from .base import NormalizeResult, Normalizer, NormalizerRegistry
from .google import GoogleNormalizer
from .meta import MetaNormalizer


def default_registry() -> NormalizerRegistry:
    """Registry with every built-in source platform."""
    return NormalizerRegistry({"meta": MetaNormalizer(), "google": GoogleNormalizer()})


__all__ = [
    "Normalizer",
    "NormalizeResult",
    "NormalizerRegistry",
    "MetaNormalizer",
    "GoogleNormalizer",
    "default_registry",
]

import pytest

from adflow.errors import NormalizationError
from adflow.models import Event
from adflow.normalizers import GoogleNormalizer, MetaNormalizer, NormalizerRegistry, default_registry


def test_default_registry_sources():
    registry = default_registry()
    assert registry.sources == ["google", "meta"]
    assert isinstance(registry.lookup("META"), MetaNormalizer)
    assert registry.lookup("tiktok") is None


def test_unknown_source_returns_error_value():
    result = default_registry().normalize(Event(source="tiktok", payload={}))
    assert isinstance(result, NormalizationError)
    assert str(result) == "Unsupported source platform: tiktok"


def test_registry_validates_eagerly():
    with pytest.raises(ValueError):
        NormalizerRegistry({"google": MetaNormalizer()})
    with pytest.raises(ValueError):
        NormalizerRegistry({"": MetaNormalizer()})
    with pytest.raises(ValueError):
        NormalizerRegistry({"meta": MetaNormalizer(), "META": MetaNormalizer()})
    with pytest.raises(TypeError):
        NormalizerRegistry({"meta": object()})


def test_require_reports_missing_sources():
    registry = NormalizerRegistry({"google": GoogleNormalizer()})
    registry.require(["google"])
    with pytest.raises(ValueError, match="meta"):
        registry.require(["google", "meta"])

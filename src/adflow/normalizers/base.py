"""
Normalizer protocol, registry and shared field-coercion helpers.

Expected failures (unknown source, malformed payload) are *returned* as
``NormalizationError`` values so callers must handle them explicitly.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional, Protocol, Union, runtime_checkable

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ..errors import NormalizationError
from ..models import Event, NormalizedEvent, RawRecord

NormalizeResult = Union[NormalizedEvent, NormalizationError]

UNKNOWN_CAMPAIGN = "Unknown Campaign"


@runtime_checkable
class Normalizer(Protocol):
    """Maps one source platform's payload contract onto NormalizedEvent."""

    source: str

    def normalize(self, event: Event) -> NormalizeResult: ...


class NormalizerRegistry:
    """Source tag -> Normalizer, validated eagerly at construction.

    Example:
        registry = NormalizerRegistry({"meta": MetaNormalizer(), "google": GoogleNormalizer()})
        registry.require(["meta", "google"])
        normalizer = registry.lookup(event.source)
    """

    def __init__(self, normalizers: Mapping[str, Normalizer]):
        self._by_source: dict[str, Normalizer] = {}
        for tag, normalizer in normalizers.items():
            key = tag.strip().lower()
            if not key:
                raise ValueError("normalizer source tag must be non-empty")
            if not isinstance(normalizer, Normalizer):
                raise TypeError(f"normalizer for '{tag}' does not implement normalize()")
            if normalizer.source.lower() != key:
                raise ValueError(
                    f"normalizer registered as '{tag}' declares source '{normalizer.source}'"
                )
            if key in self._by_source:
                raise ValueError(f"duplicate normalizer for source '{key}'")
            self._by_source[key] = normalizer
        logger.debug(f"Normalizer registry: {sorted(self._by_source)}")

    @property
    def sources(self) -> list[str]:
        return sorted(self._by_source)

    def lookup(self, source: str) -> Optional[Normalizer]:
        """Normalizer for ``source`` (case-insensitive) or None when not registered."""
        return self._by_source.get(source.strip().lower())

    def require(self, sources: Iterable[str]) -> None:
        """Fail at startup when an expected source has no normalizer."""
        missing = sorted({s.lower() for s in sources} - set(self._by_source))
        if missing:
            raise ValueError(f"no normalizer registered for: {', '.join(missing)}")

    def normalize(self, event: Event) -> NormalizeResult:
        normalizer = self.lookup(event.source)
        if normalizer is None:
            return NormalizationError(f"Unsupported source platform: {event.source}")
        return normalizer.normalize(event)


# --------------- helpers shared by normalizers


def as_mapping(payload: Mapping[str, Any], key: str, source: str) -> Mapping[str, Any]:
    value = payload.get(key)
    if not isinstance(value, Mapping):
        raise NormalizationError(f"Invalid {source} payload: missing or non-object '{key}'")
    return value


def metric_int(metrics: Mapping[str, Any], key: str) -> int:
    """Absent -> 0; numeric (or numeric string) -> int; anything else is invalid."""
    return int(metric_decimal(metrics, key))


def metric_decimal(metrics: Mapping[str, Any], key: str) -> Decimal:
    value = metrics.get(key)
    if value is None or value == "":
        return Decimal(0)
    if isinstance(value, bool):
        raise NormalizationError(f"metric '{key}' must be numeric, got {value!r}")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise NormalizationError(f"metric '{key}' must be numeric, got {value!r}") from None
    if not result.is_finite():
        raise NormalizationError(f"metric '{key}' must be finite, got {value!r}")
    return result


def fallback_date(event: Event) -> Optional[str]:
    """Event timestamp's date, else the raw record's receipt date."""
    if event.timestamp:
        return event.timestamp[:10]
    if isinstance(event, RawRecord):
        return event.received_at.date().isoformat()
    return None


def build(source: str, **fields: Any) -> NormalizeResult:
    """Construct a NormalizedEvent, turning model validation failures into errors."""
    if not fields.get("event_date"):
        return NormalizationError(f"Invalid {source} payload: no event date")
    try:
        return NormalizedEvent(source_platform=source, **fields)
    except (PydanticValidationError, ValueError) as exc:
        return NormalizationError(f"Invalid {source} payload: {exc}")

from __future__ import annotations

from collections.abc import Mapping
import re
from typing import Any, Protocol

from bidscout_workers.core.taxonomy import Taxonomy
from bidscout_workers.schemas.listings import NormalizedListing


class AdapterRejectError(Exception):
    """Raised when a raw item cannot be mapped to a listing."""


class UnknownSourceError(KeyError):
    """Raised when no adapter is registered for a source."""


class SourceAdapter(Protocol):
    source: str

    def map_item(self, raw: Mapping[str, Any], taxonomy: Taxonomy) -> NormalizedListing: ...


_REGISTRY: dict[str, SourceAdapter] = {}


def register_adapter(adapter: SourceAdapter) -> SourceAdapter:
    _REGISTRY[adapter.source] = adapter
    return adapter


def get_adapter(source: str) -> SourceAdapter:
    try:
        return _REGISTRY[source]
    except KeyError as exc:
        raise UnknownSourceError(source) from exc


def registered_sources() -> list[str]:
    return sorted(_REGISTRY)


def first_text(raw: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    return None


def first_int(raw: Mapping[str, Any], *keys: str) -> int | None:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and value:
            return int(value)
        if isinstance(value, str):
            parsed = parse_int(value)
            if parsed:
                return parsed
    return None


def parse_int(text: str | None) -> int | None:
    if not text:
        return None
    match = re.search(r"(\d+)", text.replace(",", "").replace("$", ""))
    return int(match.group(1)) if match else None


def state_from_location(location: str | None, states: list[str]) -> str | None:
    if not location or not states:
        return None
    pattern = r"\b(" + "|".join(re.escape(state) for state in states) + r")\b"
    match = re.search(pattern, location, re.IGNORECASE)
    return match.group(1).upper() if match else None

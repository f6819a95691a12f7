from __future__ import annotations

from functools import lru_cache
import json
import logging
from pathlib import Path
import re

from pydantic import BaseModel, Field, field_validator

from bidscout_workers.core.config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_TAXONOMY_PATH = Path(__file__).with_name("taxonomy.json")


class Taxonomy(BaseModel):
    version: str
    salvage_keywords: list[str] = Field(default_factory=list)
    variant_noise_words: list[str] = Field(default_factory=list)
    states: list[str] = Field(default_factory=list)
    variant_families: dict[str, dict[str, list[str]]] = Field(default_factory=dict)
    generic_variant_families: list[str] = Field(default_factory=list)

    @field_validator("salvage_keywords")
    @classmethod
    def _lower_keywords(cls, value: list[str]) -> list[str]:
        return [item.strip().lower() for item in value if item.strip()]

    @field_validator("variant_families")
    @classmethod
    def _upper_family_keys(cls, value: dict[str, dict[str, list[str]]]) -> dict[str, dict[str, list[str]]]:
        return {
            make.strip().upper(): {model.strip().upper(): families for model, families in models.items()}
            for make, models in value.items()
        }

    def salvage_reason(self, *texts: str | None) -> str | None:
        haystack = " ".join(text for text in texts if text).lower()
        if not haystack:
            return None
        for keyword in self.salvage_keywords:
            if keyword in haystack:
                return f"salvage:{keyword}"
        return None

    def model_families(self, make: str, model: str) -> list[str]:
        models = self.variant_families.get(make.strip().upper())
        if not models:
            return []
        model_key = model.strip().upper()
        if model_key in models:
            return models[model_key]
        for candidate, families in models.items():
            if candidate in model_key or model_key in candidate:
                return families
        return []

    def variant_family(self, make: str | None, model: str | None, *texts: str | None) -> str | None:
        if not make or not model:
            return None
        haystack = " ".join(text for text in texts if text).upper()
        if not haystack.strip():
            return None

        families = self.model_families(make, model)
        if families:
            ordered = sorted(families, key=len, reverse=True)
        else:
            ordered = self.generic_variant_families
        for family in ordered:
            if _family_pattern(family).search(haystack):
                return family.upper()
        return None

    def normalise_variant(self, variant: str | None) -> str | None:
        if not variant:
            return None
        text = re.sub(r"\s+", " ", variant.upper())
        for phrase in sorted(self.variant_noise_words, key=len, reverse=True):
            text = re.sub(rf"(?<!\S){re.escape(phrase.upper())}(?!\S)", " ", text)
        tokens = [
            token
            for token in text.split()
            if not re.fullmatch(r"(19|20)\d{2}", token) and not re.fullmatch(r"\d+(\.\d+)?", token)
        ]
        normalised = " ".join(tokens).strip()
        return normalised or None


@lru_cache(maxsize=256)
def _family_pattern(family: str) -> re.Pattern[str]:
    body = "".join("[+-]?" if char in "+-" else re.escape(char) for char in family.upper())
    return re.compile(rf"\b{body}\b", re.IGNORECASE)


def load_taxonomy(path: str | Path | None = None) -> Taxonomy:
    resolved = Path(path) if path else DEFAULT_TAXONOMY_PATH
    with resolved.open("r", encoding="utf-8") as handle:
        taxonomy = Taxonomy.model_validate(json.load(handle))
    logger.info("loaded taxonomy version=%s path=%s", taxonomy.version, resolved)
    return taxonomy


@lru_cache
def get_taxonomy() -> Taxonomy:
    return load_taxonomy(get_settings().taxonomy_path)

"""Helpers to load the briefing JSON schema and validate model output against it."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from jsonschema import Draft202012Validator, FormatChecker
from jsonschema.exceptions import ValidationError
from pydantic import ValidationError as ModelValidationError

from .errors import SchemaViolation
from .models import Briefing

_GROUNDING_KEYS = ("grounding_sources", "groundingSources", "groundingChunks")


def default_schema_path() -> Path:
    """Return the path to the packaged briefing schema."""
    return Path(__file__).resolve().parent / "templates" / "briefing_schema.json"


@lru_cache(maxsize=1)
def load_schema(path: Optional[Path | str] = None) -> Dict[str, Any]:
    """Load and cache the briefing schema as a dictionary."""
    schema_path = Path(path) if path else default_schema_path()
    return json.loads(schema_path.read_text(encoding="utf-8"))


def _error_location(err: ValidationError) -> str:
    return ".".join(str(piece) for piece in err.absolute_path) or "<root>"


def format_errors(errors: Iterable[ValidationError]) -> str:
    """Turn jsonschema errors into a concise human-readable string."""
    return "; ".join(_violations(errors))


def _violations(errors: Iterable[ValidationError]) -> List[str]:
    ordered = sorted(errors, key=lambda err: [str(p) for p in err.absolute_path])
    return [f"{_error_location(err)}: {err.message}" for err in ordered]


def _without_nulls(section: Any) -> Any:
    if not isinstance(section, dict):
        return section
    return {key: value for key, value in section.items() if value is not None}


def normalize_payload(payload: Any) -> Any:
    """
    Smooth over harmless variations in model output before validation.

    - `null` values count as missing so defaults apply, down to single entities.
    - `summary` is accepted when `summary_30s` is absent.
    - the legacy `tech_and_AI_relevance` casing is renamed.
    - `risk_level` is upper-cased.
    - grounding data supplied by the model itself is discarded.
    """
    if not isinstance(payload, dict):
        return payload

    data = _without_nulls(payload)
    for key in _GROUNDING_KEYS:
        data.pop(key, None)
    if "summary_30s" not in data and "summary" in data:
        data["summary_30s"] = data.pop("summary")

    meta = data.get("meta")
    if isinstance(meta, dict):
        meta = _without_nulls(meta)
        if isinstance(meta.get("entities"), list):
            meta["entities"] = [_without_nulls(entity) for entity in meta["entities"]]
        data["meta"] = meta

    military = data.get("military_mode")
    if isinstance(military, dict):
        military = _without_nulls(military)
        if "tech_and_AI_relevance" in military:
            military.setdefault("tech_and_ai_relevance", military.pop("tech_and_AI_relevance"))
        if isinstance(military.get("risk_level"), str):
            military["risk_level"] = military["risk_level"].strip().upper()
        data["military_mode"] = military
    return data


def validate_briefing_payload(
    payload: Any, schema: Optional[Dict[str, Any]] = None
) -> Any:
    """
    Validate a (normalized) payload against the briefing schema.

    Raises SchemaViolation listing every failing path.
    """
    schema_dict = schema or load_schema()
    validator = Draft202012Validator(schema_dict, format_checker=FormatChecker())
    errors = list(validator.iter_errors(payload))
    if errors:
        raise SchemaViolation(_violations(errors))
    return payload


def validate_briefing(payload: Any, schema: Optional[Dict[str, Any]] = None) -> Briefing:
    """Validate raw model output and return a Briefing with defaults applied."""
    normalized = validate_briefing_payload(normalize_payload(payload), schema=schema)
    try:
        return Briefing.model_validate(normalized)
    except ModelValidationError as exc:
        raise SchemaViolation(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        ) from exc

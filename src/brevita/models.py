"""Data models for briefing requests, validated briefings, and stored history."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CATEGORIES = ("Politics", "Military", "Tech", "Economy", "Health", "Science", "General")
DEFAULT_CATEGORY = "General"
PLACEHOLDER_SUPABASE_URL = "YOUR_SUPABASE_URL"
PLACEHOLDER_ANON_KEY = "YOUR_ANON_KEY"


class AnalysisMode(str, Enum):
    STANDARD = "STANDARD"
    MILITARY = "MILITARY"


class OutputLanguage(str, Enum):
    EN = "EN"
    TR = "TR"


class TriageStatus(str, Enum):
    NEW = "new"
    REVIEW = "review"
    CLOSED = "closed"


class BriefingRequest(BaseModel):
    """User input for one analysis run."""

    url: str = ""
    title: str = ""
    source: str = ""
    date: str = ""
    mode: AnalysisMode = AnalysisMode.STANDARD
    output_language: OutputLanguage = OutputLanguage.EN
    summary_length: Literal[15, 30, 60] = Field(
        30, description="Target reading length of the summary, in seconds."
    )
    article_text: str = Field("", description="Full article body; optional when a URL is given.")

    @model_validator(mode="after")
    def _require_url_or_text(self) -> "BriefingRequest":
        if not self.url.strip() and not self.article_text.strip():
            raise ValueError("Provide a URL or the article text.")
        return self

    @property
    def needs_search(self) -> bool:
        """True when only a URL was given, so the model must look the article up."""
        return not self.article_text.strip() and bool(self.url.strip())


# --- Briefing ---------------------------------------------------------------


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Coordinates(_WireModel):
    lat: float
    lng: float


class Entity(_WireModel):
    name: str
    type: Literal["person", "org", "location", "event", "other"] = "other"
    sentiment: Optional[Literal["positive", "negative", "neutral"]] = None
    coordinates: Optional[Coordinates] = None


class GroundingSource(_WireModel):
    """Source attribution returned by a search-augmented completion."""

    uri: Optional[str] = None
    title: Optional[str] = None


class BriefingMeta(_WireModel):
    title: str = "Untitled Briefing"
    source: Optional[str] = None
    date: Optional[str] = None
    url: Optional[str] = None
    mode: Optional[str] = None
    output_language: Optional[str] = None
    estimated_reading_time_seconds: int = Field(0, ge=0)
    category: str = DEFAULT_CATEGORY
    tags: List[str] = Field(default_factory=list)
    region: Optional[str] = None
    country: Optional[str] = None
    reliability_score: Optional[float] = Field(None, ge=0, le=100)
    credibility_analysis: Optional[str] = None
    entities: List[Entity] = Field(default_factory=list)


class MilitaryMode(_WireModel):
    is_included: bool = False
    risk_level: Optional[Literal["LOW", "MEDIUM", "HIGH"]] = None
    actors: List[str] = Field(default_factory=list)
    theater_tags: List[str] = Field(default_factory=list)
    domain_tags: List[str] = Field(default_factory=list)
    commander_brief: Optional[str] = None
    objectives: Optional[str] = Field(None, alias="interests_and_objectives")
    timeline: Optional[str] = None
    risks: Optional[str] = Field(None, alias="risks_and_threats")
    operational_implications: Optional[str] = None
    tech_relevance: Optional[str] = Field(None, alias="tech_and_ai_relevance")
    watchpoints: List[str] = Field(default_factory=list, alias="watchpoints_for_commanders")

    @field_validator("risk_level", mode="before")
    @classmethod
    def _blank_risk_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().upper()
            return value or None
        return value

    @model_validator(mode="after")
    def _clear_when_excluded(self) -> "MilitaryMode":
        # Standard-mode briefings carry no military content at all.
        if not self.is_included:
            self.risk_level = None
            self.commander_brief = None
            self.objectives = None
            self.timeline = None
            self.risks = None
            self.operational_implications = None
            self.tech_relevance = None
            self.actors = []
            self.theater_tags = []
            self.domain_tags = []
            self.watchpoints = []
        return self


class Briefing(_WireModel):
    """Validated intelligence briefing; the one canonical shape."""

    meta: BriefingMeta = Field(default_factory=BriefingMeta)
    summary: str = Field(..., alias="summary_30s")
    key_points: List[str] = Field(default_factory=list)
    context_notes: str = ""
    bias_notes: str = Field("", alias="bias_or_uncertainty")
    military_mode: MilitaryMode = Field(default_factory=MilitaryMode)
    grounding_sources: List[GroundingSource] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy_shapes(cls, data: Any) -> Any:
        """Accept older stored shapes (casing drift, `groundingChunks`)."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        military = data.get("military_mode")
        if isinstance(military, dict) and "tech_and_AI_relevance" in military:
            military = dict(military)
            military.setdefault("tech_and_ai_relevance", military.pop("tech_and_AI_relevance"))
            data["military_mode"] = military
        chunks = data.pop("groundingChunks", None)
        if chunks and not data.get("grounding_sources"):
            data["grounding_sources"] = [
                (chunk.get("web") or {}) for chunk in chunks if isinstance(chunk, dict)
            ]
        return data

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready dict using the wire keys (storage and API output)."""
        return self.model_dump(mode="json", by_alias=True)


# --- History ----------------------------------------------------------------


def now_millis() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def _iso_to_millis(value: Any) -> int:
    if isinstance(value, (int, float)):
        return int(value)
    if not value:
        return now_millis()
    text = str(value).strip()
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


class HistoryItem(BaseModel):
    """A stored briefing. Only `pinned` and `triage_status` change after creation."""

    id: str = Field(..., frozen=True)
    timestamp: int = Field(..., frozen=True, description="Creation time, epoch millis.")
    data: Briefing
    pinned: bool = False
    triage_status: Optional[TriageStatus] = None

    def to_record(self) -> Dict[str, Any]:
        """Local JSONL representation."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "data": self.data.to_payload(),
            "pinned": self.pinned,
            "triage_status": self.triage_status.value if self.triage_status else None,
        }

    def to_row(self, user_id: str) -> Dict[str, Any]:
        """Insert payload for the remote briefings table (id/created_at are server-assigned)."""
        return {
            "user_id": user_id,
            "data": self.data.to_payload(),
            "is_pinned": self.pinned,
            "triage_status": self.triage_status.value if self.triage_status else None,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "HistoryItem":
        return cls(
            id=str(row["id"]),
            timestamp=_iso_to_millis(row.get("created_at")),
            data=Briefing.model_validate(row["data"]),
            pinned=bool(row.get("is_pinned")),
            triage_status=row.get("triage_status") or None,
        )

    @classmethod
    def from_legacy(cls, raw: Dict[str, Any]) -> "HistoryItem":
        """Read one entry of the old flat history array."""
        return cls(
            id=str(raw["id"]),
            timestamp=int(raw.get("timestamp") or now_millis()),
            data=Briefing.model_validate(raw["data"]),
            pinned=bool(raw.get("pinned")),
            triage_status=raw.get("triage_status") or raw.get("triageStatus") or None,
        )


# --- Capability flags -------------------------------------------------------


class AuthState(BaseModel):
    """Who is signed in, if anyone; drives remote-vs-local and proxy auth."""

    user_id: Optional[str] = None
    access_token: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id and self.access_token)


class RemoteConfig(BaseModel):
    """Connection details for the remote briefings table."""

    url: Optional[str] = None
    anon_key: Optional[str] = None
    table: str = "briefings"

    @property
    def is_configured(self) -> bool:
        return (
            bool(self.url and self.anon_key)
            and self.url != PLACEHOLDER_SUPABASE_URL
            and self.anon_key != PLACEHOLDER_ANON_KEY
        )


class Completion(BaseModel):
    """Raw transport output before extraction."""

    text: str
    grounding_sources: List[GroundingSource] = Field(default_factory=list)

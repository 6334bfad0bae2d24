"""Briefing request orchestration.

One request flows through these steps:
- prompt (metadata block + article text, or the search-augmented variant)
- transport (proxy when configured, otherwise OpenAI directly) under the retry policy
- extract (tolerant JSON parsing)
- validate (schema + defaults)
- backfill (reading time) and attach search citations

Defaults read settings from the environment, but an injected transport and
retry policy allow offline usage for tests.
"""

from __future__ import annotations

import logging
import math
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from openai import AsyncOpenAI

from .config import Settings, get_settings, retry_policy
from .errors import SchemaViolation
from .extraction import extract_json
from .models import AuthState, Briefing, BriefingRequest, GroundingSource, HistoryItem
from .retry import RetryPolicy
from .schema import validate_briefing
from .transport import CompletionRequest, LLMTransport, OpenAITransport, ProxyTransport

if TYPE_CHECKING:
    from .history import HistoryStore

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
SYSTEM_PROMPT_FILE = "briefing_system.txt"
WORDS_PER_SECOND = 4  # 240 words per minute


# --- Helpers --------------------------------------------------------------


@lru_cache(maxsize=None)
def _load_prompt_file(filename: str) -> str:
    path = PROMPTS_DIR / filename
    return path.read_text(encoding="utf-8")


def system_prompt() -> str:
    return _load_prompt_file(SYSTEM_PROMPT_FILE)


def build_client(api_key: Optional[str] = None) -> AsyncOpenAI:
    """Create an OpenAI client; separated for easier testing."""
    return AsyncOpenAI(api_key=api_key)


def _require_api_key(settings: Settings) -> str:
    if not settings.openai_api_key:
        raise RuntimeError(
            "OPENAI_API_KEY is required. Set it in the environment or .env file."
        )
    return settings.openai_api_key


def _metadata_block(request: BriefingRequest) -> str:
    return (
        f"URL: {request.url}\n"
        f"TITLE: {request.title}\n"
        f"SOURCE: {request.source}\n"
        f"DATE: {request.date}\n"
        f"MODE: {request.mode.value}\n"
        f"OUTPUT_LANGUAGE: {request.output_language.value}\n"
        f"SUMMARY_LENGTH_SECONDS: {request.summary_length}"
    )


def build_user_message(request: BriefingRequest) -> str:
    """Render the single user-role message for a request."""
    if request.needs_search:
        return (
            "ACTION REQUIRED: The user has provided a URL but NO article text.\n"
            f"You MUST use the web search tool to find the content of this exact URL: {request.url}\n"
            "Do not answer from general knowledge; search for the specific article at that link.\n\n"
            "METADATA:\n"
            f"{_metadata_block(request)}"
        )
    return f"{_metadata_block(request)}\nARTICLE:\n{request.article_text}"


def build_completion_request(request: BriefingRequest) -> CompletionRequest:
    search = request.needs_search
    return CompletionRequest(
        system_instruction=system_prompt(),
        user_message=build_user_message(request),
        use_search=search,
        # Tool-use responses cannot be forced into strict JSON output.
        strict_json=not search,
    )


def select_transport(
    settings: Settings,
    auth: Optional[AuthState] = None,
    *,
    client: Optional[AsyncOpenAI] = None,
) -> LLMTransport:
    """Proxy when one is configured, otherwise a direct OpenAI transport."""
    if settings.proxy_url:
        token = (
            auth.access_token if auth and auth.is_authenticated else None
        ) or settings.supabase_anon_key
        if not token:
            raise RuntimeError(
                "BRIEFING_PROXY_URL is set but no session token or SUPABASE_ANON_KEY is available."
            )
        return ProxyTransport(
            settings.proxy_url, token, timeout=settings.proxy_timeout_seconds
        )

    active_client = client or build_client(_require_api_key(settings))
    return OpenAITransport(
        active_client,
        model=settings.briefing_model,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
    )


def count_words(text: str) -> int:
    return len(text.split())


def estimate_reading_time(briefing: Briefing) -> int:
    """Seconds to read the summary and key points at four words per second."""
    text = " ".join([briefing.summary, " ".join(briefing.key_points)])
    return math.ceil(count_words(text) / WORDS_PER_SECOND)


def backfill_reading_time(briefing: Briefing) -> Briefing:
    if not briefing.meta.estimated_reading_time_seconds:
        briefing.meta.estimated_reading_time_seconds = estimate_reading_time(briefing)
    return briefing


def _dedupe_sources(sources: List[GroundingSource]) -> List[GroundingSource]:
    seen: set[str] = set()
    unique: List[GroundingSource] = []
    for source in sources:
        key = source.uri or source.title or ""
        if key in seen:
            continue
        seen.add(key)
        unique.append(source)
    return unique


# --- Pipeline -------------------------------------------------------------


async def generate_briefing(
    request: BriefingRequest,
    *,
    transport: Optional[LLMTransport] = None,
    retry: Optional[RetryPolicy] = None,
    auth: Optional[AuthState] = None,
    settings: Optional[Settings] = None,
) -> Briefing:
    """
    Run one analysis request and return a validated Briefing.

    Raises TransportError subclasses for network failures (after retries),
    MalformedResponse when no JSON could be recovered, and SchemaViolation
    when the JSON breaks the briefing contract.
    """
    if transport is None or retry is None:
        settings = settings or get_settings()
    active_transport = transport or select_transport(settings, auth)
    active_retry = retry or retry_policy(settings)

    completion_request = build_completion_request(request)
    logger.info(
        "Requesting briefing (mode=%s, search=%s, transport=%s)",
        request.mode.value,
        completion_request.use_search,
        type(active_transport).__name__,
    )
    completion = await active_retry.run(lambda: active_transport.complete(completion_request))

    raw = extract_json(completion.text)
    try:
        briefing = validate_briefing(raw)
    except SchemaViolation as exc:
        raise SchemaViolation(exc.violations, prefix="AI generated invalid structure") from exc

    backfill_reading_time(briefing)
    if completion_request.use_search and completion.grounding_sources:
        briefing.grounding_sources = _dedupe_sources(completion.grounding_sources)
    return briefing


async def analyze_and_save(
    request: BriefingRequest,
    store: "HistoryStore",
    *,
    transport: Optional[LLMTransport] = None,
    retry: Optional[RetryPolicy] = None,
    settings: Optional[Settings] = None,
) -> HistoryItem:
    """Generate a briefing and hand it to the history store."""
    briefing = await generate_briefing(
        request, transport=transport, retry=retry, auth=store.auth, settings=settings
    )
    item = await store.save(briefing)
    logger.info("Stored briefing %s (%s)", item.id, briefing.meta.title)
    return item

"""FastAPI service: the analyze-briefing proxy plus briefing/history endpoints."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .analysis import _require_api_key, analyze_and_save, build_client, system_prompt
from .config import get_settings
from .errors import BriefingError, MalformedResponse, SchemaViolation, TransportError, TransportErrorKind
from .history import HistoryStore, filter_history
from .models import BriefingRequest, HistoryItem
from .transport import CompletionRequest, OpenAITransport

logger = logging.getLogger(__name__)

app = FastAPI(title="Brevita Briefings")

_STATUS_FOR_KIND = {
    TransportErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    TransportErrorKind.OVERLOADED: status.HTTP_503_SERVICE_UNAVAILABLE,
    TransportErrorKind.FATAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _add_cors(app: FastAPI) -> None:
    """Allow the browser client to call the API from another origin."""
    allow_all = os.getenv("CORS_ALLOW_ALL", "true").lower() == "true"
    origins_env = os.getenv("CORS_ALLOW_ORIGINS", "")
    origins = [o.strip() for o in origins_env.split(",") if o.strip()]
    if allow_all or not origins:
        origins = ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        # Starlette/FastAPI disallow wildcard origins when credentials are enabled.
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )


_add_cors(app)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _direct_transport() -> OpenAITransport:
    """The proxy always talks to the model directly, never to another proxy."""
    settings = get_settings()
    return OpenAITransport(
        build_client(_require_api_key(settings)),
        model=settings.briefing_model,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
    )


def _history_store() -> HistoryStore:
    return HistoryStore.from_settings(get_settings())


async def _run_briefing_pipeline(request: BriefingRequest) -> HistoryItem:
    return await analyze_and_save(request, _history_store())


def _completion_request_from_payload(payload: Dict[str, Any]) -> CompletionRequest:
    """
    Read the proxy body: `{messages: [{role, parts: [{text}]}], config: {...}}`.

    Only the last message is used; the client sends a single user turn.
    """
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise ValueError("messages must be a non-empty list.")
    parts = (messages[-1] or {}).get("parts") or []
    text = parts[0].get("text") if parts and isinstance(parts[0], dict) else None
    if not isinstance(text, str) or not text.strip():
        raise ValueError("The last message must carry a text part.")

    config = payload.get("config") or {}
    return CompletionRequest(
        system_instruction=config.get("systemInstruction") or system_prompt(),
        user_message=text,
        use_search=bool(config.get("tools")),
        strict_json=config.get("responseMimeType") == "application/json",
    )


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/analyze-briefing")
async def analyze_briefing(
    payload: Dict[str, Any], authorization: Optional[str] = Header(None)
) -> JSONResponse:
    """Single pass-through completion; retries are the caller's job."""
    if not authorization or not authorization.lower().startswith("bearer "):
        return _error(status.HTTP_401_UNAUTHORIZED, "Missing bearer token.")
    try:
        request = _completion_request_from_payload(payload)
    except ValueError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    try:
        completion = await _direct_transport().complete(request)
    except TransportError as exc:
        return _error(_STATUS_FOR_KIND[exc.kind], str(exc))
    except RuntimeError as exc:
        logger.error("Proxy misconfigured: %s", exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    return JSONResponse(
        content={
            "text": completion.text,
            "groundingSources": [
                source.model_dump(exclude_none=True) for source in completion.grounding_sources
            ],
        }
    )


@app.post("/briefings", status_code=status.HTTP_201_CREATED)
async def create_briefing(payload: Dict[str, Any]) -> JSONResponse:
    """End-to-end: analyze the request and store the briefing."""
    try:
        request = BriefingRequest(**payload)
    except ValidationError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    try:
        item = await _run_briefing_pipeline(request)
    except (MalformedResponse, SchemaViolation) as exc:
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc))
    except TransportError as exc:
        return _error(_STATUS_FOR_KIND[exc.kind], str(exc))
    except BriefingError as exc:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
    except RuntimeError as exc:
        logger.error("Briefing pipeline misconfigured: %s", exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    return JSONResponse(status_code=status.HTTP_201_CREATED, content=item.to_record())


@app.get("/briefings")
async def list_briefings(q: Optional[str] = None, category: Optional[str] = None) -> List[Dict[str, Any]]:
    items = await _history_store().get_all()
    return [item.to_record() for item in filter_history(items, query=q, category=category)]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "brevita.server:app",
        host=os.getenv("BREVITA_HOST", "0.0.0.0"),
        port=int(os.getenv("BREVITA_PORT", "8000")),
        reload=os.getenv("BREVITA_RELOAD", "false").lower() == "true",
    )

"""LLM transports: direct OpenAI Responses calls and the authenticated HTTP proxy.

Both transports translate failures into TransportError with a `kind` so the
retry policy never has to inspect messages itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx
import openai
from openai import AsyncOpenAI
from pydantic import ValidationError

from .errors import FatalTransportError, transport_error
from .models import Completion, GroundingSource
from .retry import classify_failure

logger = logging.getLogger(__name__)

PROXY_PATH = "/analyze-briefing"
WEB_SEARCH_TOOL = {"type": "web_search"}


@dataclass(frozen=True)
class CompletionRequest:
    system_instruction: str
    user_message: str
    use_search: bool = False
    strict_json: bool = True


class LLMTransport(Protocol):
    async def complete(self, request: CompletionRequest) -> Completion: ...


def _response_text_or_raise(response: object) -> str:
    """Extract response text or raise a clear error when output is missing."""
    text = getattr(response, "output_text", None)
    if isinstance(text, str) and text.strip():
        return text

    status = getattr(response, "status", None)
    if status == "incomplete":
        details = getattr(response, "incomplete_details", None)
        reason = getattr(details, "reason", None) if details else None
        hint = ""
        if reason == "max_output_tokens":
            hint = " Increase MAX_TOKENS, or set it to 0 to remove the cap."
        raise FatalTransportError(f"Briefing response incomplete (reason={reason}).{hint}")

    err = getattr(response, "error", None)
    if err:
        raise FatalTransportError(f"Briefing response error: {err}")

    raise FatalTransportError("No response generated by the model.")


def _citations(response: object) -> List[GroundingSource]:
    """Collect url_citation annotations from Responses output items."""
    sources: List[GroundingSource] = []
    for item in getattr(response, "output", None) or []:
        if getattr(item, "type", None) != "message":
            continue
        for part in getattr(item, "content", None) or []:
            for annotation in getattr(part, "annotations", None) or []:
                if getattr(annotation, "type", None) != "url_citation":
                    continue
                sources.append(
                    GroundingSource(
                        uri=getattr(annotation, "url", None),
                        title=getattr(annotation, "title", None),
                    )
                )
    return sources


class OpenAITransport:
    """Calls the OpenAI Responses API directly."""

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        model: str,
        max_tokens: int = 0,
        temperature: Optional[float] = None,
    ) -> None:
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    def _request_kwargs(self, request: CompletionRequest) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "input": [
                {"role": "system", "content": request.system_instruction},
                {"role": "user", "content": request.user_message},
            ],
        }
        if request.use_search:
            kwargs["tools"] = [WEB_SEARCH_TOOL]
        if request.strict_json:
            kwargs["text"] = {"format": {"type": "json_object"}}
        if self.max_tokens and self.max_tokens > 0:
            kwargs["max_output_tokens"] = self.max_tokens
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        return kwargs

    async def complete(self, request: CompletionRequest) -> Completion:
        try:
            response = await self.client.responses.create(**self._request_kwargs(request))
        except openai.APIStatusError as exc:
            kind = classify_failure(exc.status_code, str(exc))
            raise transport_error(str(exc), kind, exc.status_code) from exc
        except openai.APIConnectionError as exc:
            raise FatalTransportError(f"Could not reach the model API: {exc}") from exc

        text = _response_text_or_raise(response)
        sources = _citations(response) if request.use_search else []
        return Completion(text=text, grounding_sources=sources)


def proxy_request_body(request: CompletionRequest) -> Dict[str, Any]:
    """Body expected by POST {base}/analyze-briefing."""
    config: Dict[str, Any] = {"systemInstruction": request.system_instruction}
    if request.use_search:
        config["tools"] = [WEB_SEARCH_TOOL]
    if request.strict_json:
        config["responseMimeType"] = "application/json"
    return {
        "messages": [{"role": "user", "parts": [{"text": request.user_message}]}],
        "config": config,
    }


def _proxy_error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text or response.reason_phrase


class ProxyTransport:
    """Routes completions through the bearer-authenticated analyze-briefing proxy."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = base_url.rstrip("/") + PROXY_PATH
        self.token = token
        self.timeout = timeout
        self._client = client

    async def _post(self, client: httpx.AsyncClient, body: Dict[str, Any]) -> httpx.Response:
        return await client.post(
            self.url,
            json=body,
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=self.timeout,
        )

    async def complete(self, request: CompletionRequest) -> Completion:
        body = proxy_request_body(request)
        try:
            if self._client is not None:
                response = await self._post(self._client, body)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, body)
        except httpx.HTTPError as exc:
            raise FatalTransportError(f"Could not reach the briefing proxy: {exc}") from exc

        if response.is_error:
            error_text = _proxy_error_text(response)
            kind = classify_failure(response.status_code, error_text)
            logger.debug("Proxy returned %s (%s): %s", response.status_code, kind.value, error_text)
            raise transport_error(
                f"Proxy error ({response.status_code}): {error_text}",
                kind,
                response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise FatalTransportError("Proxy returned a non-JSON body.") from exc
        text = payload.get("text") if isinstance(payload, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise FatalTransportError("No response generated by the proxy.")

        return Completion(text=text, grounding_sources=_proxy_sources(payload))


def _proxy_sources(payload: Dict[str, Any]) -> List[GroundingSource]:
    raw = payload.get("groundingSources")
    sources: List[GroundingSource] = []
    for item in raw if isinstance(raw, list) else []:
        try:
            sources.append(GroundingSource.model_validate(item))
        except ValidationError:
            logger.warning("Skipping malformed grounding source from proxy: %r", item)
    return sources

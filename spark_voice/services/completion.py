"""Completion services: who answers a user request.

Two backends sit behind one interface:

* ``GatewayChatClient`` posts to the gateway's OpenAI-compatible
  ``/v1/chat/completions`` endpoint with the shared history as context. The
  relay writes both turns to the shared transcript itself.
* ``AgentExecutor`` (``spark_voice.services.agent``) hands the message to the
  main agent session through its CLI; the agent writes the transcript.

``CompletionRouter`` picks one per request.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from spark_voice import constants
from spark_voice.errors import CompletionTimeout, DeliveryError, ErrorCode, delivery_error
from spark_voice.telemetry import SPAN_COMPLETION, get_tracer
from spark_voice.transcript.reader import Turn

logger = logging.getLogger(__name__)
tracer = get_tracer()

SYSTEM_PROMPTS: dict[str, str] = {
    "voice": "You are Spark, a voice assistant. Be concise (under 50 words), natural, conversational. No markdown.",
    "chat": "You are Spark, an AI assistant. Be thorough and helpful. Use markdown for formatting when useful.",
    "notes": "You are Spark. Summarize clearly with bullet points for key takeaways.",
}

_CONTEXT_TURNS = 10
_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,", re.IGNORECASE)


@dataclass
class CompletionRequest:
    text: str
    mode: str = "chat"
    session_id: str = ""
    history: list[Turn] = field(default_factory=list)
    image: Optional[str] = None  # data URL


class CompletionService(Protocol):
    def logs_turns(self, request: CompletionRequest) -> bool:
        """True if the backend writes both turns to the shared transcript."""
        ...

    async def complete(self, request: CompletionRequest) -> str: ...


def _image_part(data_url: str) -> dict[str, Any]:
    match = _DATA_URL_RE.match(data_url)
    media_type = match.group(1) if match else "image/jpeg"
    data = data_url[match.end():] if match else data_url
    return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}


def build_messages(request: CompletionRequest) -> list[dict[str, Any]]:
    """System prompt, the last few shared turns, then the new user message."""
    messages: list[dict[str, Any]] = [
        {"role": "system", "content": SYSTEM_PROMPTS.get(request.mode, SYSTEM_PROMPTS["chat"])},
    ]
    messages.extend(turn.to_message() for turn in request.history[-_CONTEXT_TURNS:])
    if request.image:
        messages.append({
            "role": "user",
            "content": [{"type": "text", "text": request.text}, _image_part(request.image)],
        })
    else:
        messages.append({"role": "user", "content": request.text})
    return messages


class GatewayChatClient:
    """Chat completions through the local gateway.

    Parameters
    ----------
    base_url : str
        Gateway root, e.g. ``http://localhost:18789``.
    token : str
        Bearer token for the gateway.
    timeout : float
        Whole-request deadline in seconds; exceeding it raises
        ``CompletionTimeout``.
    """

    def __init__(self, base_url: str, token: str, *, timeout: float = constants.CHAT_TIMEOUT) -> None:
        self._url = f"{base_url.rstrip('/')}/v1/chat/completions"
        self._token = token
        self._timeout = timeout

    def logs_turns(self, request: CompletionRequest) -> bool:
        return False

    def build_body(self, request: CompletionRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": constants.IMAGE_MODEL if request.image else constants.MODELS.get(request.mode, constants.MODELS["chat"]),
            "messages": build_messages(request),
            "max_tokens": 150 if request.mode == "voice" else 4000,
        }
        # Extended thinking is too slow for image requests.
        if request.mode == "chat" and not request.image:
            body["thinking"] = {"type": "enabled", "budget_tokens": 2000}
        return body

    async def complete(self, request: CompletionRequest) -> str:
        body = self.build_body(request)
        headers = {"Authorization": f"Bearer {self._token}"}

        with tracer.start_as_current_span(SPAN_COMPLETION) as span:
            span.set_attribute("completion.backend", "gateway")
            span.set_attribute("completion.mode", request.mode)
            logger.info("[Gateway] POST %s (model=%s, mode=%s)", self._url, body["model"], request.mode)
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._url, json=body, headers=headers)
                    response.raise_for_status()
                    data = response.json()
            except httpx.TimeoutException as exc:
                logger.error("[Gateway] Chat request timed out after %.0fs", self._timeout)
                raise CompletionTimeout(f"Request timed out after {self._timeout:.0f}s") from exc
            except httpx.HTTPStatusError as exc:
                detail = exc.response.text[:200]
                logger.error("[Gateway] API error %d: %s", exc.response.status_code, detail)
                raise delivery_error(f"API error: {exc.response.status_code} - {detail}") from exc
            except httpx.HTTPError as exc:
                logger.error("[Gateway] Chat request failed: %s", exc)
                raise DeliveryError(f"Chat failed: {exc}") from exc
            except ValueError as exc:
                raise DeliveryError("Malformed completion response", ErrorCode.E_COMPLETION_FAILED) from exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            logger.warning("[Gateway] Malformed completion body: %.200s", data)
            raise DeliveryError("Malformed completion response") from exc
        if not isinstance(content, str) or not content.strip():
            return "No response"
        return content


class CompletionRouter:
    """Send plain text turns to the agent (when unified) and the rest to chat.

    Image requests and voice-note summaries always use the gateway chat
    endpoint: the agent CLI only takes a text message.
    """

    def __init__(self, chat: CompletionService, agent: Optional[CompletionService] = None) -> None:
        self._chat = chat
        self._agent = agent

    def route(self, request: CompletionRequest) -> CompletionService:
        if self._agent is not None and not request.image and request.mode != "notes":
            return self._agent
        return self._chat

    def logs_turns(self, request: CompletionRequest) -> bool:
        return self.route(request).logs_turns(request)

    async def complete(self, request: CompletionRequest) -> str:
        return await self.route(request).complete(request)

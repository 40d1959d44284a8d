"""Agent executor — routes a message into the main agent session via its CLI.

Runs ``<cli> agent --session-id <id> --message <text> --json`` and returns
the joined text payloads of the JSON result. The message carries the
relay's origin tag so the turn the agent appends to the shared transcript
is recognised as self-authored by the tailer.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable

from spark_voice import constants
from spark_voice.errors import CompletionTimeout, DeliveryError, ErrorCode, delivery_error
from spark_voice.services.completion import CompletionRequest
from spark_voice.telemetry import SPAN_COMPLETION, get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer()


def parse_agent_output(stdout: str) -> str:
    """Join ``result.payloads[].text`` from the CLI's JSON output."""
    data = json.loads(stdout)
    result = data.get("result") if isinstance(data, dict) else None
    payloads = (result or {}).get("payloads") or []
    texts = [p["text"] for p in payloads if isinstance(p, dict) and isinstance(p.get("text"), str) and p["text"]]
    return "\n".join(texts)


class AgentExecutor:
    def __init__(
        self,
        session_id_provider: Callable[[], str],
        *,
        cli_path: str = constants.DEFAULT_AGENT_CLI,
        timeout: float = constants.CLI_TIMEOUT,
        source_tag: str = constants.RELAY_SOURCE_TAG,
    ) -> None:
        self._session_id_provider = session_id_provider
        self._cli_path = cli_path
        self._timeout = timeout
        self._source_tag = source_tag

    def logs_turns(self, request: CompletionRequest) -> bool:
        return True

    def build_args(self, request: CompletionRequest) -> list[str]:
        return [
            "agent",
            "--session-id", self._session_id_provider(),
            "--message", f"[{self._source_tag}] {request.text}",
            "--json",
        ]

    async def complete(self, request: CompletionRequest) -> str:
        args = self.build_args(request)
        with tracer.start_as_current_span(SPAN_COMPLETION) as span:
            span.set_attribute("completion.backend", "agent")
            span.set_attribute("completion.mode", request.mode)
            try:
                proc = await asyncio.create_subprocess_exec(
                    self._cli_path,
                    *args,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                logger.error("[Agent] Failed to spawn %s: %s", self._cli_path, exc)
                raise DeliveryError(f"Failed to run agent: {exc}", ErrorCode.E_AGENT_FAILED) from exc

            try:
                raw_out, raw_err = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
            except asyncio.TimeoutError as exc:
                proc.kill()
                await proc.wait()
                logger.error("[Agent] Timed out after %.0fs", self._timeout)
                raise CompletionTimeout(f"Agent request timed out after {self._timeout:.0f}s") from exc

        stdout = raw_out.decode("utf-8", errors="replace")
        stderr = raw_err.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            excerpt = (stderr or stdout)[:300]
            logger.warning("[Agent] CLI exited with code %s: %s", proc.returncode, excerpt)
            raise delivery_error(f"CLI exited with code {proc.returncode}: {excerpt}", ErrorCode.E_AGENT_FAILED)

        try:
            reply = parse_agent_output(stdout)
        except (json.JSONDecodeError, AttributeError) as exc:
            excerpt = (stderr or stdout or "Unknown error from agent")[:500]
            raise delivery_error(excerpt, ErrorCode.E_AGENT_FAILED) from exc

        logger.info("[Agent] Reply (%d chars): %.100s", len(reply), reply)
        return reply or "Request processed."

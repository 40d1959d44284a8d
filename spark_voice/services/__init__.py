"""Downstream clients: chat completion, agent CLI and gateway status."""

from spark_voice.services.agent import AgentExecutor
from spark_voice.services.completion import (
    CompletionRequest,
    CompletionRouter,
    CompletionService,
    GatewayChatClient,
)
from spark_voice.services.gateway import GatewayClient, GatewayStatus

__all__ = [
    "AgentExecutor",
    "CompletionRequest",
    "CompletionRouter",
    "CompletionService",
    "GatewayChatClient",
    "GatewayClient",
    "GatewayStatus",
]

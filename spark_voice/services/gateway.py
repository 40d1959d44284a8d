"""Gateway status probe used to decide when parked requests can be retried."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from spark_voice import constants

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayStatus:
    ready: bool = False
    connecting: bool = False


class GatewayClient:
    def __init__(self, base_url: str, token: str, *, timeout: float = constants.GATEWAY_STATUS_TIMEOUT) -> None:
        self._url = f"{base_url.rstrip('/')}/api/status"
        self._token = token
        self._timeout = timeout

    async def check_status(self) -> GatewayStatus:
        """Ask the gateway whether the WhatsApp channel is up.

        Any failure (network, non-2xx, unexpected body) reads as not ready.
        """
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(self._url, headers={"Authorization": f"Bearer {self._token}"})
            if response.status_code >= 400:
                logger.debug("[Gateway] Status endpoint returned %d", response.status_code)
                return GatewayStatus()
            status = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("[Gateway] Status check failed: %s", exc)
            return GatewayStatus()

        whatsapp = (status.get("channels") or {}).get("whatsapp") if isinstance(status, dict) else None
        if not isinstance(whatsapp, dict):
            return GatewayStatus()
        connected = whatsapp.get("connected") is True
        running = whatsapp.get("running") is True
        return GatewayStatus(ready=connected, connecting=running and not connected)

    async def is_ready(self) -> bool:
        status = await self.check_status()
        if status.connecting:
            logger.info("[Gateway] Channel still connecting")
        return status.ready

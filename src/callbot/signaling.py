"""
Call signaling (answer / reject / hang up).

`GraphSignalingClient` talks to the Microsoft Graph communications API with an
app-only token. `LoggingSignalingClient` only logs the actions and reports
success; it is used when no Graph credentials are configured.

Every action returns True/False; transport errors are logged, never raised.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import httpx
import structlog

from src.callbot.config import Config, get_config

logger = structlog.get_logger(__name__)

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
MEDIA_CONFIG_BLOB = "app-hosted-media-config"
TOKEN_REFRESH_MARGIN_SECONDS = 60


class SignalingClient(ABC):
    @abstractmethod
    async def answer(self, call_id: str, callback_uri: str, modalities: Sequence[str]) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def reject(self, call_id: str, reason: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def hangup(self, call_id: str) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LoggingSignalingClient(SignalingClient):
    """Pretend signaling: logs each action and always succeeds."""

    def __init__(self) -> None:
        self.actions: List[Tuple[str, str, Any]] = []

    async def answer(self, call_id: str, callback_uri: str, modalities: Sequence[str]) -> bool:
        self.actions.append(("answer", call_id, list(modalities)))
        logger.info(
            "Pretend-answer sent",
            call_id=call_id,
            callback_uri=callback_uri,
            modalities=list(modalities),
        )
        return True

    async def reject(self, call_id: str, reason: str) -> bool:
        self.actions.append(("reject", call_id, reason))
        logger.info("Pretend-reject sent", call_id=call_id, reason=reason)
        return True

    async def hangup(self, call_id: str) -> bool:
        self.actions.append(("hangup", call_id, None))
        logger.info("Pretend-hangup sent", call_id=call_id)
        return True


@dataclass
class _AccessToken:
    value: str
    expires_at: float

    def is_fresh(self) -> bool:
        return time.time() < self.expires_at - TOKEN_REFRESH_MARGIN_SECONDS


class GraphSignalingClient(SignalingClient):
    """Microsoft Graph communications client (client-credentials auth)."""

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_config()
        self._client = client
        self._owns_client = client is None
        self._token: Optional[_AccessToken] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def _authenticate(self) -> str:
        if self._token is not None and self._token.is_fresh():
            return self._token.value

        resp = await self._get_client().post(
            TOKEN_URL.format(tenant=self.config.ms_tenant_id),
            data={
                "client_id": self.config.ms_app_id,
                "client_secret": self.config.ms_app_secret,
                "scope": GRAPH_SCOPE,
                "grant_type": "client_credentials",
            },
        )
        resp.raise_for_status()
        data = resp.json()
        self._token = _AccessToken(
            value=data["access_token"],
            expires_at=time.time() + float(data.get("expires_in", 3600)),
        )
        return self._token.value

    def _call_url(self, call_id: str, action: str) -> str:
        return f"{self.config.graph_base_url}/communications/calls/{call_id}/{action}"

    async def _post(self, action: str, call_id: str, body: dict[str, Any]) -> bool:
        try:
            token = await self._authenticate()
            resp = await self._get_client().post(
                self._call_url(call_id, action),
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error("Graph action failed", action=action, call_id=call_id, error=str(e))
            return False

        if not resp.is_success:
            logger.error(
                "Graph action failed",
                action=action,
                call_id=call_id,
                status_code=resp.status_code,
                response=resp.text[:200],
            )
            return False

        logger.info("Graph action sent", action=action, call_id=call_id)
        return True

    async def answer(self, call_id: str, callback_uri: str, modalities: Sequence[str]) -> bool:
        body = {
            "callbackUri": callback_uri,
            "acceptedModalities": list(modalities),
            "mediaConfig": {
                "@odata.type": "#microsoft.graph.appHostedMediaConfig",
                "blob": MEDIA_CONFIG_BLOB,
                "removeFromDefaultAudioGroup": False,
            },
        }
        return await self._post("answer", call_id, body)

    async def reject(self, call_id: str, reason: str) -> bool:
        return await self._post("reject", call_id, {"reason": reason})

    async def hangup(self, call_id: str) -> bool:
        return await self._post("hangup", call_id, {})


def create_signaling_client(config: Optional[Config] = None) -> SignalingClient:
    config = config or get_config()
    mode = (config.signaling_mode or "log").strip().lower()

    if mode == "graph":
        return GraphSignalingClient(config)
    if mode == "log":
        return LoggingSignalingClient()

    raise ValueError(f"Unsupported SIGNALING_MODE: {config.signaling_mode}")

from __future__ import annotations

from typing import Protocol

import httpx
import structlog

from ingest.errors import PublishError


logger = structlog.get_logger(__name__)


class SocialPublisher(Protocol):
    async def publish(self, *, page_id: str, token: str, message: str) -> str: ...

    async def update(self, *, post_id: str, token: str, message: str) -> str: ...


class FacebookPublisher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        graph_url: str = "https://graph.facebook.com/v24.0",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._client = client
        self._graph_url = graph_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout_seconds, connect=5.0)

    async def _post(self, path: str, payload: dict) -> dict:
        url = f"{self._graph_url}/{path}"
        try:
            res = await self._client.post(url, json=payload, timeout=self._timeout)
        except httpx.TimeoutException as e:
            raise PublishError("timeout") from e
        except httpx.RequestError as e:
            raise PublishError(f"request_error:{e.__class__.__name__}") from e

        if not 200 <= res.status_code < 300:
            raise PublishError(f"http_{res.status_code}: {res.text[:200]}")
        try:
            body = res.json()
        except ValueError as e:
            raise PublishError("parse_error") from e
        if not isinstance(body, dict):
            raise PublishError("parse_error")
        return body

    async def publish(self, *, page_id: str, token: str, message: str) -> str:
        body = await self._post(
            f"{page_id}/feed", {"message": message, "access_token": token}
        )
        post_id = body.get("id")
        if not post_id:
            raise PublishError("response missing post id")
        logger.info("facebook_post_created", page_id=page_id, post_id=post_id)
        return str(post_id)

    async def update(self, *, post_id: str, token: str, message: str) -> str:
        await self._post(post_id, {"message": message, "access_token": token})
        logger.info("facebook_post_updated", post_id=post_id)
        return post_id

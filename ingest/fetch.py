from __future__ import annotations

import asyncio
import json
import time

import httpx

from ingest.errors import FetchError, ParseError


VENDOR_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Referer": "https://web.pulsepoint.org/",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


async def fetch(
    client: httpx.AsyncClient,
    *,
    url: str,
    user_agent: str,
    params: dict[str, str] | None = None,
    extra_headers: dict[str, str] | None = None,
    timeout_seconds: float = 10.0,
) -> tuple[int, bytes, int]:
    headers = {"User-Agent": user_agent, "Accept": "application/json, */*"}
    if extra_headers:
        headers.update(extra_headers)

    timeout = httpx.Timeout(timeout_seconds, connect=min(5.0, timeout_seconds))
    started = time.perf_counter()
    async with asyncio.timeout(timeout_seconds):
        response = await client.get(url, params=params, headers=headers, timeout=timeout)
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    return response.status_code, response.content, elapsed_ms


async def fetch_json(
    client: httpx.AsyncClient,
    *,
    url: str,
    user_agent: str,
    params: dict[str, str] | None = None,
    extra_headers: dict[str, str] | None = None,
    timeout_seconds: float = 10.0,
) -> object:
    try:
        status, body, _ = await fetch(
            client,
            url=url,
            user_agent=user_agent,
            params=params,
            extra_headers=extra_headers,
            timeout_seconds=timeout_seconds,
        )
    except (httpx.TimeoutException, TimeoutError) as e:
        raise FetchError("timeout") from e
    except httpx.RequestError as e:
        raise FetchError(f"request_error:{e.__class__.__name__}") from e

    if not 200 <= status < 300:
        raise FetchError(f"http_{status}", status_code=status)

    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError("parse_error: response body is not JSON") from e

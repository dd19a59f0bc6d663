from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp

from txpipe.errors import RpcMethodError, is_rate_limit_message


@dataclass(slots=True, frozen=True)
class HttpResponse:
    status: int
    text: str
    headers: dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        if not self.text:
            return {}
        try:
            return json.loads(self.text)
        except json.JSONDecodeError:
            return {"raw": self.text}


class HttpTransport(Protocol):
    async def post_json(self, url: str, payload: dict[str, Any]) -> HttpResponse:
        ...


class AiohttpTransport:
    def __init__(self, *, timeout_seconds: float = 8.0) -> None:
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "AiohttpTransport":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def post_json(self, url: str, payload: dict[str, Any]) -> HttpResponse:
        if self._session is None or self._session.closed:
            await self.connect()
        if self._session is None:
            raise RuntimeError("HTTP session is not initialized.")

        async with self._session.post(url, json=payload) as response:
            raw_text = await response.text()
            return HttpResponse(
                status=response.status,
                text=raw_text,
                headers={key: value for key, value in response.headers.items()},
            )


def parse_retry_after_seconds(raw: str | None) -> float | None:
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def error_message_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
        details = payload.get("details")
        if details:
            return str(details)
    return str(payload)


class JsonRpcClient:
    def __init__(self, *, logger: logging.Logger, transport: HttpTransport) -> None:
        self._logger = logger
        self._transport = transport
        self._request_id = 0

    @property
    def transport(self) -> HttpTransport:
        return self._transport

    async def call(self, url: str, method: str, params: list[Any] | None = None) -> Any:
        self._request_id += 1
        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            response = await self._transport.post_json(url, payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as error:
            raise RpcMethodError(
                f"RPC transport failure: method={method} error={error}",
                method=method,
                endpoint=url,
            ) from error

        parsed = response.json()
        retry_after_seconds = parse_retry_after_seconds(_header(response.headers, "Retry-After"))

        if response.status >= 400:
            error_payload = parsed.get("error") if isinstance(parsed, dict) else None
            message = error_message_from_payload(error_payload) if error_payload else response.text[:240]
            raise RpcMethodError(
                f"RPC call failed: method={method} status={response.status} body={message!r}",
                method=method,
                endpoint=url,
                status=response.status,
                code=error_payload.get("code") if isinstance(error_payload, dict) else None,
                data=parsed,
                retry_after_seconds=retry_after_seconds,
            )

        if not isinstance(parsed, dict):
            raise RpcMethodError(
                f"Invalid RPC response for {method}: {parsed}",
                method=method,
                endpoint=url,
                status=response.status,
            )

        if parsed.get("error"):
            error_payload = parsed["error"]
            message = error_message_from_payload(error_payload)
            raise RpcMethodError(
                f"RPC error for {method}: {message}",
                method=method,
                endpoint=url,
                status=response.status,
                code=error_payload.get("code") if isinstance(error_payload, dict) else None,
                data=error_payload.get("data") if isinstance(error_payload, dict) else error_payload,
                retry_after_seconds=retry_after_seconds if is_rate_limit_message(message) else None,
            )

        return parsed.get("result")


def _header(headers: dict[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None

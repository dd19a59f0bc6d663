from __future__ import annotations

import logging
from typing import Any

from txpipe.common import log_event
from txpipe.errors import PreparationError
from txpipe.rpc.client import HttpTransport
from txpipe.types import UnsignedTransactionEnvelope


class PreparerClient:
    """Client for the backend that serializes unsigned transactions.

    Responses look like ``{"success": true, "data": {"serializedTransaction": ..., ...}}``
    or the flat ``{"serializedTransaction": ..., "metadata": {...}}``.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        transport: HttpTransport,
        base_url: str,
        network: str,
    ) -> None:
        if not base_url.strip():
            raise ValueError("PREPARER_URL is required to prepare transactions.")
        self._logger = logger
        self._transport = transport
        self._base_url = base_url.strip().rstrip("/")
        self._network = network

    async def prepare(
        self,
        path: str,
        body: dict[str, Any],
        *,
        expected_instruction_count: int | None = None,
    ) -> UnsignedTransactionEnvelope:
        url = f"{self._base_url}/{path.strip().lstrip('/')}"
        response = await self._transport.post_json(url, body)
        parsed = response.json()

        if response.status >= 400:
            detail = parsed.get("error") if isinstance(parsed, dict) else None
            raise PreparationError(
                f"Preparer request failed: status={response.status} error={detail or response.text[:240]!r}",
                status=response.status,
            )
        if not isinstance(parsed, dict) or parsed.get("success") is False:
            detail = parsed.get("error") if isinstance(parsed, dict) else parsed
            raise PreparationError(f"Preparer reported failure: {detail}", status=response.status)

        data = parsed.get("data") if isinstance(parsed.get("data"), dict) else parsed
        serialized = data.get("serializedTransaction")
        if not isinstance(serialized, str) or not serialized.strip():
            raise PreparationError("Preparer response is missing serializedTransaction.", status=response.status)

        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {
            key: value for key, value in data.items() if key != "serializedTransaction"
        }
        envelope = UnsignedTransactionEnvelope.from_base64(
            serialized.strip(),
            network=self._network,
            expected_instruction_count=expected_instruction_count,
            metadata=metadata,
        )
        log_event(
            self._logger,
            level="info",
            event="tx_prepared",
            message="Received unsigned transaction from preparer",
            path=path,
            envelope_id=envelope.envelope_id,
            payload_bytes=len(envelope.payload),
        )
        return envelope

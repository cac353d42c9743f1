# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Delivery of operation reports to the remote callback endpoint.
"""

from typing import Any, Dict

import httpx
import structlog

logger = structlog.get_logger()


class CallbackReporter:
    """
    POSTs report payloads to {base_url}/{endpoint}.

    Delivery failures are logged and reported as False; they never raise,
    the operation they describe has already finished.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._transport = transport
        self._timeout = timeout

    async def deliver(self, endpoint: str, payload: Dict[str, Any]) -> bool:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("report_delivery_failed", endpoint=endpoint, error=str(e))
            return False

        logger.info("report_delivered", endpoint=endpoint, status_code=response.status_code)
        return True

"""
Remote wait-time predictor port and its HTTP client.

The trained model lives behind an HTTP endpoint and is treated as
unreliable. The client makes exactly one attempt per call; retrying is the
job of the next recalculation pass.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx

from .errors import ExternalServiceError

logger = logging.getLogger(__name__)

PREDICTOR_TIMEOUT = httpx.Timeout(2.0, connect=1.0)


class Predictor(Protocol):
    async def predict(self, features: Dict[str, Any]) -> Tuple[float, float]: ...


class HttpPredictor:
    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout: httpx.Timeout = PREDICTOR_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def predict(self, features: Dict[str, Any]) -> Tuple[float, float]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            response = await self._client.post(self.endpoint, json={"features": features}, headers=headers)
            response.raise_for_status()
            body = response.json()
            minutes = float(body["wait_time_minutes"])
            confidence = float(body["confidence"])
        except httpx.HTTPError as exc:
            raise ExternalServiceError("predictor", f"predictor request failed: {exc}") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise ExternalServiceError("predictor", f"malformed predictor response: {exc}") from exc

        if minutes < 0 or not 0.0 <= confidence <= 1.0:
            raise ExternalServiceError("predictor", f"out-of-range prediction ({minutes}, {confidence})")
        return minutes, confidence

    async def aclose(self) -> None:
        await self._client.aclose()

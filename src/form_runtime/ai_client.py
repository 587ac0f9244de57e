from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

import httpx

from .schema import AICalculation

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class AICalculationError(RuntimeError):
    """Raised when the AI calculation service does not return a usable result."""


class AICalculationService(Protocol):
    async def calculate(self, payload: dict[str, Any]) -> Any: ...


def build_request_payload(ai_calculation: AICalculation, field_values: Mapping[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "fieldValues": dict(field_values),
        "instructions": ai_calculation.combined_instructions,
        "outputFormat": ai_calculation.output_format,
    }
    if ai_calculation.examples:
        payload["examples"] = [example.to_dict() for example in ai_calculation.examples]
    if ai_calculation.fallback_value is not None:
        payload["fallbackValue"] = ai_calculation.fallback_value
    if ai_calculation.unit_conversion is not None:
        payload["unitConversion"] = ai_calculation.unit_conversion
    return payload


class AICalculationClient:
    """POSTs calculation requests to the AI endpoint and unwraps ``{"result": ...}``."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._transport = transport

    async def calculate(self, payload: dict[str, Any]) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.endpoint, json=payload, headers=self.headers)
        except httpx.HTTPError as exc:
            raise AICalculationError(f"AI calculation request failed: {exc}") from exc

        if not response.is_success:
            logger.warning(
                "ai_service_error_response",
                extra={"status_code": response.status_code, "endpoint": self.endpoint},
            )
            raise AICalculationError(f"AI calculation service returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise AICalculationError("AI calculation service returned malformed JSON") from exc

        if not isinstance(body, dict) or "result" not in body:
            raise AICalculationError("AI calculation response has no result")
        return body["result"]

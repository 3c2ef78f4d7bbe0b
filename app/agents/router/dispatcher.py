from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

import httpx

from app.agents.router.schemas import Step
from app.logging import get_logger

logger = get_logger("dispatcher")

# Keys a capability may use for its produced artifact, most authoritative first.
OUTPUT_URL_FIELDS = ("artifactUrl", "firebaseOutputUrl", "data_url", "outputUrl", "output_image", "imageUrl")


class DispatchError(Exception):
    """Raised by dispatchers that prefer exceptions over error results."""


@dataclass(frozen=True)
class DispatchResult:
    ok: bool
    artifact: str | None = None
    error_code: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)


class CapabilityDispatcher(Protocol):
    async def dispatch(self, step: Step, request_id: str = "-") -> DispatchResult:
        ...


def extract_output_artifact(payload: Any) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    for key in OUTPUT_URL_FIELDS:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    nested = payload.get("result")
    if isinstance(nested, Mapping):
        return extract_output_artifact(nested)
    return None


def step_payload(step: Step) -> dict[str, Any]:
    body = step.to_dict()
    body.pop("endpoint", None)
    return body


class WebhookDispatcher:
    """Posts each step to a single capability webhook; never raises."""

    def __init__(self, url: str, timeout_s: float = 120.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self.transport = transport

    async def dispatch(self, step: Step, request_id: str = "-") -> DispatchResult:
        if not self.url:
            return DispatchResult(ok=False, error_code="missing_webhook_url")

        try:
            timeout = httpx.Timeout(self.timeout_s)
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                resp = await client.post(self.url, json=step_payload(step), headers={"X-Request-Id": request_id})
                if resp.status_code < 200 or resp.status_code >= 300:
                    logger.warning(f"[{request_id}] {step.operation_id.value} returned HTTP {resp.status_code}")
                    return DispatchResult(ok=False, error_code="webhook_http_error")
                data = resp.json() if resp.content else {}
        except httpx.TimeoutException:
            return DispatchResult(ok=False, error_code="webhook_timeout")
        except ValueError:
            return DispatchResult(ok=False, error_code="webhook_invalid_json")
        except httpx.HTTPError as e:
            logger.warning(f"[{request_id}] {step.operation_id.value} network error: {e}")
            return DispatchResult(ok=False, error_code="webhook_network_error")

        if not isinstance(data, Mapping):
            data = {"result": data}
        if data.get("status") == "error" or data.get("ok") is False or data.get("success") is False:
            error_code = data.get("error") or data.get("error_code") or "capability_error"
            return DispatchResult(ok=False, error_code=str(error_code), payload=data)
        return DispatchResult(ok=True, artifact=extract_output_artifact(data), payload=data)

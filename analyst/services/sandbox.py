"""Client for the external code sandbox that runs analysis code."""

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from analyst.core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class SandboxResult:
    result: Any | None = None
    error: str | None = None
    logs: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_code(code: str, input_data: list[dict[str, Any]]) -> SandboxResult:
    """POST ``{code, input_data}`` to the sandbox and return what it reports.

    Transport failures and timeouts are reported as an error result, never raised.
    """
    settings = get_settings()
    try:
        async with httpx.AsyncClient(timeout=settings.sandbox_timeout_seconds) as client:
            resp = await client.post(
                settings.sandbox_url,
                json={"code": code, "input_data": input_data},
            )
            resp.raise_for_status()
            body = resp.json()
    except httpx.TimeoutException:
        logger.warning("Sandbox timed out after %ss", settings.sandbox_timeout_seconds)
        return SandboxResult(error="Code execution timed out")
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Sandbox request failed: %s", exc)
        return SandboxResult(error=f"Sandbox unavailable: {exc}")

    logs = body.get("logs") or []
    if body.get("error"):
        return SandboxResult(error=str(body["error"]), logs=logs)
    return SandboxResult(result=body.get("result"), logs=logs)

"""PageSpeed Insights client using httpx async client.

Adapts the provider's Lighthouse payload into an AuditResult and turns every
failure into a typed AuditError. There is no retry here: the orchestrator
owns retry counting and backoff.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

import httpx

from perfpulse.config import PAGESPEED_API_URL

logger = logging.getLogger(__name__)

USER_AGENT = "PerfPulse/0.1 (performance-tester)"
DEFAULT_TIMEOUT = 60.0

CATEGORIES = ("performance", "accessibility", "best-practices", "seo")

# Lighthouse audit id -> AuditResult.metrics key
METRIC_AUDITS: dict[str, str] = {
    "first-contentful-paint": "first_contentful_paint",
    "largest-contentful-paint": "largest_contentful_paint",
    "cumulative-layout-shift": "cumulative_layout_shift",
    "total-blocking-time": "total_blocking_time",
    "interactive": "time_to_interactive",
    "speed-index": "speed_index",
}


# ── Errors ───────────────────────────────────────────────────────────


class AuditError(Exception):
    """Base class for audit provider failures."""

    retryable: bool = False


class Transport(AuditError):
    """Network failure or timeout talking to the provider."""

    retryable = True


class ProviderUnavailable(AuditError):
    """Provider answered 5xx, or 429 while rate limiting."""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderRejected(AuditError):
    """Provider refused the target (4xx): unreachable, blocked or invalid URL."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponse(AuditError):
    """Provider response lacks the data a result needs."""


# ── Result ───────────────────────────────────────────────────────────


@dataclass
class AuditResult:
    """Structured outcome of one provider audit.

    ``scores`` holds the provider's 0-1 category scores keyed by category id.
    ``metrics`` holds the six timing audits (ms, CLS unitless), 0 when absent.
    """

    scores: dict[str, float]
    metrics: dict[str, float]
    total_requests: int = 0
    total_bytes: int = 0
    raw: dict[str, Any] = field(default_factory=dict)

    def score_percent(self, category: str) -> int:
        """Category score as an integer 0-100, rounded half up."""
        value = math.floor(self.scores[category] * 100 + 0.5)
        return max(0, min(100, int(value)))


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _numeric(audits: dict[str, Any], audit_id: str) -> float:
    audit = audits.get(audit_id)
    if not isinstance(audit, dict):
        return 0.0
    value = audit.get("numericValue")
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
        return 0.0
    return float(value)


def parse_audit_result(data: Any) -> AuditResult:
    """Map a runPagespeed response body to an AuditResult.

    Raises MalformedResponse when the Lighthouse result or any of the four
    category scores is missing.
    """
    if not isinstance(data, dict):
        raise MalformedResponse("Audit response is not a JSON object")
    lighthouse = data.get("lighthouseResult")
    if not isinstance(lighthouse, dict):
        raise MalformedResponse("Audit response has no lighthouseResult")

    categories = _mapping(lighthouse.get("categories"))
    scores: dict[str, float] = {}
    missing = []
    for category in CATEGORIES:
        score = _mapping(categories.get(category)).get("score")
        if not isinstance(score, (int, float)) or isinstance(score, bool):
            missing.append(category)
            continue
        scores[category] = float(score)
    if missing:
        raise MalformedResponse(f"Audit response missing category scores: {', '.join(missing)}")

    audits = _mapping(lighthouse.get("audits"))
    metrics = {key: _numeric(audits, audit_id) for audit_id, key in METRIC_AUDITS.items()}

    network = _mapping(audits.get("network-requests"))
    items = _mapping(network.get("details")).get("items") or []
    total_requests = len(items) if isinstance(items, list) else 0
    total_bytes = int(round(_numeric(audits, "total-byte-weight")))

    return AuditResult(
        scores=scores,
        metrics=metrics,
        total_requests=total_requests,
        total_bytes=total_bytes,
        raw=lighthouse,
    )


def _provider_message(response: httpx.Response) -> str:
    """Best-effort error text from a provider error body."""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.reason_phrase or f"HTTP {response.status_code}"


# ── Client ───────────────────────────────────────────────────────────


class AuditProviderClient:
    """Calls the PageSpeed Insights ``runPagespeed`` endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str = PAGESPEED_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> AuditProviderClient:
        return cls(
            settings.pagespeed_api_key,
            base_url=settings.pagespeed_api_url,
            timeout=settings.audit_timeout,
        )

    def _params(self, url: str, device: str) -> list[tuple[str, str]]:
        params = [("url", url), ("strategy", device)]
        params.extend(("category", c.upper().replace("-", "_")) for c in CATEGORIES)
        if self.api_key:
            params.append(("key", self.api_key))
        return params

    async def audit(self, url: str, device: str) -> AuditResult:
        """Run one audit of ``url`` with the given device strategy."""
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            ) as client:
                response = await client.get(self.base_url, params=self._params(url, device))
        except httpx.TimeoutException as exc:
            logger.warning("Audit provider timed out for %s: %s", url, exc)
            raise Transport(f"Audit provider timed out after {self.timeout:g}s") from exc
        except httpx.TransportError as exc:
            logger.warning("Audit provider unreachable for %s: %s", url, exc)
            raise Transport(f"Could not reach audit provider: {exc.__class__.__name__}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            logger.warning("Audit provider unavailable (HTTP %s) for %s", status, url)
            raise ProviderUnavailable(
                f"Audit provider unavailable (HTTP {status}): {_provider_message(response)}",
                status_code=status,
            )
        if status >= 400:
            logger.info("Audit provider rejected %s (HTTP %s)", url, status)
            raise ProviderRejected(
                f"Audit provider rejected the request (HTTP {status}): "
                f"{_provider_message(response)}",
                status_code=status,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponse("Audit response is not valid JSON") from exc
        result = parse_audit_result(data)
        logger.info(
            "Audit finished for %s (%s): performance=%.2f requests=%d",
            url,
            device,
            result.scores["performance"],
            result.total_requests,
        )
        return result

"""
Connectivity validator for Grafana Cloud credentials.

Resolves the same TelemetryConfig the services use, then sends one minimal
write per backend:
- OTLP: an empty trace batch to the traces endpoint. 401/403 is an auth
  failure, any other status >= 400 is a failure.
- Pyroscope: a tiny profile to /ingest with basic auth. Only 401/403 fail;
  any other status (even a 400 for the payload) means the credentials were
  accepted before payload validation ran.

Backends not pointed at the hosted domain are skipped (local setups are valid).
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from telemetry.config import (
    TelemetryConfig,
    is_cloud_endpoint,
    mentions_cloud_domain,
    normalize_endpoint,
)
from telemetry.gate import is_valid_url, otlp_cloud_problems, profiling_cloud_problems

logger = logging.getLogger(__name__)

# Bounded wait for each probe
PROBE_TIMEOUT_SECONDS = 5.0

AUTH_REJECTED_STATUSES = (401, 403)

PROBE_APP_NAME = "env-validation"

# An empty OTLP/JSON export request
EMPTY_TRACE_BATCH = {"resourceSpans": []}


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of probing one backend."""

    ok: bool
    skip: bool = False
    detail: str = ""

    @property
    def status(self) -> str:
        if self.skip:
            return "skip"
        return "ok" if self.ok else "fail"

    @classmethod
    def skipped(cls, detail: str) -> "ValidationOutcome":
        return cls(ok=True, skip=True, detail=detail)

    @classmethod
    def passed(cls, detail: str) -> "ValidationOutcome":
        return cls(ok=True, detail=detail)

    @classmethod
    def failed(cls, detail: str) -> "ValidationOutcome":
        return cls(ok=False, detail=detail)


def classify_otlp_status(status_code: int, reason: str = "") -> ValidationOutcome:
    """Strict classification: any error status fails."""
    if status_code in AUTH_REJECTED_STATUSES:
        return ValidationOutcome.failed(f"Auth rejected ({status_code})")
    if status_code >= 400:
        return ValidationOutcome.failed(f"{status_code} {reason}".strip())
    return ValidationOutcome.passed("connection successful")


def classify_profiling_status(status_code: int) -> ValidationOutcome:
    """Lenient classification: only an auth rejection fails."""
    if status_code in AUTH_REJECTED_STATUSES:
        return ValidationOutcome.failed(f"Auth rejected ({status_code})")
    return ValidationOutcome.passed("credentials accepted")


async def validate_otlp(config: TelemetryConfig, client: httpx.AsyncClient) -> ValidationOutcome:
    """Probe the OTLP traces endpoint with an empty batch."""
    if mentions_cloud_domain(config.endpoint) and not is_valid_url(config.endpoint or ""):
        return ValidationOutcome.failed(
            f"Invalid OTEL_EXPORTER_OTLP_ENDPOINT: {config.endpoint}"
        )
    if not is_cloud_endpoint(config.endpoint):
        return ValidationOutcome.skipped("not configured for Grafana Cloud")

    problems = otlp_cloud_problems(config)
    if problems:
        return ValidationOutcome.failed("; ".join(problems))

    url = config.traces_endpoint
    logger.debug(f"Probing OTLP endpoint {url}")
    try:
        response = await client.post(
            url,
            json=EMPTY_TRACE_BATCH,
            headers={**config.headers, "Content-Type": "application/json"},
        )
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        return ValidationOutcome.failed(f"{type(e).__name__}: {e}")

    return classify_otlp_status(response.status_code, response.reason_phrase)


def profile_ingest_url(profiling_endpoint: str) -> str:
    return normalize_endpoint(profiling_endpoint) + "/ingest"


async def validate_profiling(
    config: TelemetryConfig, client: httpx.AsyncClient
) -> ValidationOutcome:
    """Probe the Pyroscope ingest endpoint with a one-sample profile."""
    url = config.profiling_endpoint
    if mentions_cloud_domain(url) and not is_valid_url(normalize_endpoint(url or "")):
        return ValidationOutcome.failed(f"Invalid PYROSCOPE_URL: {url}")
    if not is_cloud_endpoint(config.profiling_endpoint):
        return ValidationOutcome.skipped("not configured for Grafana Cloud")

    problems = profiling_cloud_problems(config)
    if problems:
        return ValidationOutcome.failed("; ".join(problems))

    auth = config.profiling_auth
    url = profile_ingest_url(config.profiling_endpoint or "")
    now = int(time.time())
    logger.debug(f"Probing Pyroscope endpoint {url}")
    try:
        response = await client.post(
            url,
            params={
                "name": f"{PROBE_APP_NAME}.cpu",
                "from": now - 10,
                "until": now,
                "format": "folded",
                "spyName": "preflight",
            },
            content=b"preflight;probe 1\n",
            headers={"Content-Type": "text/plain"},
            auth=httpx.BasicAuth(auth.user, auth.password),
        )
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        return ValidationOutcome.failed(f"{type(e).__name__}: {e}")

    return classify_profiling_status(response.status_code)


async def run_validation(
    config: TelemetryConfig,
    *,
    timeout: float = PROBE_TIMEOUT_SECONDS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, ValidationOutcome]:
    """Probe every backend and return outcomes keyed by backend name."""
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        return {
            "otlp": await validate_otlp(config, client),
            "pyroscope": await validate_profiling(config, client),
        }


def all_passed(outcomes: Dict[str, ValidationOutcome]) -> bool:
    return all(outcome.ok for outcome in outcomes.values())

"""
Inngest REST API client.

Wraps the handful of Inngest endpoints the MCP server needs. Inngest Cloud
and the local dev server expose different surfaces, so several operations
try a list of candidate paths in order, and some short-circuit when the
client points at a local dev server.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, NamedTuple, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

LOCAL_DEV_KEY = "local-dev-key"
LOCAL_HOST_MARKERS = ("localhost", "127.0.0.1")
REQUEST_TIMEOUT = 30.0
DEFAULT_FUNCTION_RUNS_LIMIT = 20

DEV_MODE_HINT = "Please use Inngest Cloud for run management features."


# ─── Models ──────────────────────────────────────────────────────────────────


class InngestConfig(BaseModel):
    """Connection settings for one client."""
    model_config = ConfigDict(frozen=True)

    signing_key: str = LOCAL_DEV_KEY
    event_key: Optional[str] = None
    base_url: str = "http://localhost:8288"
    env: Optional[str] = None
    # None means "infer from base_url"
    dev_mode: Optional[bool] = None

    @property
    def is_local(self) -> bool:
        if self.dev_mode is not None:
            return self.dev_mode
        return any(marker in self.base_url for marker in LOCAL_HOST_MARKERS)


class WorkflowStep(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    status: Literal["Running", "Completed", "Failed", "Skipped"]
    started_at: datetime
    ended_at: Optional[datetime] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None


class WorkflowRun(BaseModel):
    model_config = ConfigDict(extra="allow")

    run_id: str
    run_started_at: datetime
    function_id: str
    function_version: int
    environment_id: str
    event_id: str
    status: Literal["Running", "Completed", "Failed", "Cancelled", "Paused"]
    ended_at: Optional[datetime] = None
    output: Optional[Any] = None
    steps: List[WorkflowStep] = Field(default_factory=list)


class ApiResponse(BaseModel):
    """Snapshot of the most recent successful response."""

    url: str
    status: int
    data: Any = None
    timestamp: str


class ApiError(BaseModel):
    """Snapshot of the most recent failure."""

    message: str
    timestamp: str


class Attempt(NamedTuple):
    path: str
    error: str


class Candidate(NamedTuple):
    """One endpoint to try.

    ``transform`` returns None for an unrecognized payload and raises
    InngestPayloadError for a malformed one.
    """

    path: str
    transform: Callable[[Any], Any]


# ─── Errors ──────────────────────────────────────────────────────────────────


class InngestError(Exception):
    """Base class for every failure raised by the client."""


class InngestAPIError(InngestError):
    """The API answered with a non-success status."""

    def __init__(self, status_code: int, reason: str, body: str):
        self.status_code = status_code
        self.reason = reason
        self.body = body
        super().__init__(f"Inngest API error: {status_code} {reason} - {body}")


class InngestConnectionError(InngestError):
    """The request never produced a response (DNS, refused, timeout)."""


class InngestPayloadError(InngestError):
    """A success response carried a body that is not the expected shape."""


class DevModeUnavailableError(InngestError):
    """The local dev server does not provide this capability."""

    def __init__(self, capability: str):
        self.capability = capability
        super().__init__(
            f"{capability} not available in development mode. {DEV_MODE_HINT}"
        )


class CandidatesExhaustedError(InngestError):
    """Every candidate path failed."""

    def __init__(self, summary: str, attempts: List[Attempt]):
        self.attempts = attempts
        last = attempts[-1].error if attempts else "Unknown error"
        super().__init__(f"{summary}. Last error: {last}")


# ─── Client ──────────────────────────────────────────────────────────────────


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _unwrap_list(payload: Any) -> List[Any]:
    if isinstance(payload, dict):
        return payload.get("data") or []
    return []


def _validate_run(payload: Any) -> WorkflowRun:
    try:
        return WorkflowRun.model_validate(payload)
    except ValidationError as e:
        raise InngestPayloadError(f"Malformed run payload: {e}") from e


def _unwrap_run(payload: Any) -> Optional[WorkflowRun]:
    """Accept either ``{"data": run}`` or a bare run object."""
    if not isinstance(payload, dict):
        return None
    if payload.get("data"):
        return _validate_run(payload["data"])
    if "run_id" in payload:
        return _validate_run(payload)
    return None


def _success(_payload: Any) -> Dict[str, bool]:
    return {"success": True}


class InngestClient:
    """Async client for the Inngest REST API.

    Args:
        config: Connection settings.
        transport: Optional httpx transport, used by tests to fake the API.
    """

    def __init__(
        self,
        config: InngestConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config
        self._transport = transport
        self._last_response: Optional[ApiResponse] = None
        self._last_error: Optional[ApiError] = None

    @property
    def config(self) -> InngestConfig:
        return self._config

    @property
    def last_response(self) -> Optional[ApiResponse]:
        return self._last_response

    @property
    def last_error(self) -> Optional[ApiError]:
        return self._last_error

    @property
    def is_local(self) -> bool:
        return self._config.is_local

    def _get_headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Merge caller headers with environment and auth headers."""
        headers: Dict[str, str] = dict(extra or {})
        headers["Content-Type"] = "application/json"

        if self._config.env:
            headers["X-Inngest-Env"] = self._config.env

        key = self._config.signing_key
        if key and key != LOCAL_DEV_KEY and not self.is_local:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    def _record_error(self, message: str) -> None:
        self._last_error = ApiError(message=message, timestamp=_now_iso())

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Issue one request and return the parsed JSON body."""
        url = f"{self._config.base_url}{path}"
        logger.debug("%s %s", method, url)

        try:
            async with httpx.AsyncClient(
                timeout=REQUEST_TIMEOUT, transport=self._transport
            ) as client:
                response = await client.request(
                    method,
                    url,
                    headers=self._get_headers(headers),
                    params=params,
                    json=json,
                )
        except httpx.HTTPError as e:
            error = InngestConnectionError(f"Request to {url} failed: {e}")
            self._record_error(str(error))
            raise error from e

        if not response.is_success:
            error = InngestAPIError(
                response.status_code, response.reason_phrase, response.text
            )
            self._record_error(str(error))
            raise error

        try:
            data = response.json() if response.content else None
        except ValueError as e:
            error = InngestError(f"Invalid JSON from {url}: {e}")
            self._record_error(str(error))
            raise error from e

        self._last_response = ApiResponse(
            url=url, status=response.status_code, data=data, timestamp=_now_iso()
        )
        return data

    async def _first_success(
        self, method: str, candidates: List[Candidate], summary: str
    ) -> Any:
        """Try each candidate in order and return the first usable result."""
        attempts: List[Attempt] = []
        for candidate in candidates:
            try:
                payload = await self.request(method, candidate.path)
            except InngestError as e:
                logger.warning("%s %s failed: %s", method, candidate.path, e)
                attempts.append(Attempt(candidate.path, str(e)))
                continue

            try:
                result = candidate.transform(payload)
            except InngestPayloadError as e:
                result = None
                message = f"{e} (from {candidate.path})"
            else:
                message = f"Unrecognized response from {candidate.path}"
            if result is not None:
                return result

            logger.warning(message)
            self._record_error(message)
            attempts.append(Attempt(candidate.path, message))

        raise CandidatesExhaustedError(summary, attempts)

    def _parse_runs(self, payload: Any) -> List[WorkflowRun]:
        try:
            return [_validate_run(run) for run in _unwrap_list(payload)]
        except InngestPayloadError as e:
            self._record_error(str(e))
            raise

    def _reject_local(self, capability: str) -> None:
        if self.is_local:
            logger.info("%s skipped: local dev server", capability)
            raise DevModeUnavailableError(capability)

    # ─── Runs ────────────────────────────────────────────────────────────────

    async def get_event_runs(self, event_id: str) -> List[WorkflowRun]:
        data = await self.request("GET", f"/v1/events/{event_id}/runs")
        return self._parse_runs(data)

    async def get_function_runs(
        self, function_id: str, limit: int = DEFAULT_FUNCTION_RUNS_LIMIT
    ) -> List[WorkflowRun]:
        """List recent runs of a function.

        The dev server has no run history, so locally any failure yields [].
        """
        try:
            data = await self.request(
                "GET", f"/v1/functions/{function_id}/runs", params={"limit": limit}
            )
            return self._parse_runs(data)
        except InngestError:
            if self.is_local:
                logger.info("Function runs unavailable on dev server, returning none")
                return []
            raise

    async def get_run_details(self, run_id: str) -> WorkflowRun:
        self._reject_local("Run details")
        candidates = [
            Candidate(f"/v0/runs/{run_id}", _unwrap_run),
            Candidate(f"/v1/runs/{run_id}", _unwrap_run),
            Candidate(f"/runs/{run_id}", _unwrap_run),
        ]
        return await self._first_success(
            "GET", candidates, f"Failed to get run details for {run_id}"
        )

    async def get_run_steps(self, run_id: str) -> List[WorkflowStep]:
        # Step timelines are only served by the dashboard's GraphQL API.
        return []

    async def cancel_run(self, run_id: str) -> Dict[str, bool]:
        self._reject_local("Run cancellation")
        candidates = [
            Candidate(f"{prefix}/runs/{run_id}/cancel", _success)
            for prefix in ("/v0", "/v1", "")
        ]
        return await self._first_success(
            "POST", candidates, f"Failed to cancel run {run_id}"
        )

    async def replay_run(self, run_id: str) -> Dict[str, bool]:
        self._reject_local("Run replay")
        # Some deployments name this endpoint "retry".
        candidates = [
            Candidate(f"{prefix}/runs/{run_id}/{verb}", _success)
            for verb in ("replay", "retry")
            for prefix in ("/v0", "/v1", "")
        ]
        return await self._first_success(
            "POST", candidates, f"Failed to replay run {run_id}"
        )

    async def bulk_cancel_runs(
        self,
        function_id: Optional[str] = None,
        started_after: Optional[str] = None,
        started_before: Optional[str] = None,
        condition: Optional[str] = None,
    ) -> Any:
        """Cancel every run matching the given filters.

        Only supplied filters are sent; ``condition`` goes out as ``if``.
        """
        body: Dict[str, Any] = {}
        if function_id:
            body["function_id"] = function_id
        if started_after:
            body["started_after"] = started_after
        if started_before:
            body["started_before"] = started_before
        if condition:
            body["if"] = condition

        try:
            return await self.request("POST", "/v1/cancellations", json=body)
        except InngestError as e:
            if self.is_local:
                raise DevModeUnavailableError("Bulk cancellation") from e
            raise

    # ─── Events ──────────────────────────────────────────────────────────────

    async def send_event(self, name: str, data: Any) -> Optional[str]:
        """Send an event and return the id Inngest assigned to it."""
        response = await self.request(
            "POST",
            "/v1/events",
            json={"name": name, "data": data, "timestamp": int(time.time() * 1000)},
        )
        if not isinstance(response, dict):
            return None
        if response.get("id"):
            return response["id"]
        ids = response.get("ids") or []
        return ids[0] if ids else None

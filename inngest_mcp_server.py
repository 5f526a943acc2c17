#!/usr/bin/env python3
"""
Inngest MCP Server
Lets an MCP client send events to Inngest and inspect or manage runs.

Setup:
  1. pip install -e .
  2. For Inngest Cloud set INNGEST_SIGNING_KEY and INNGEST_BASE_URL
     (defaults target a local dev server at http://localhost:8288)
  3. Optionally set INNGEST_EVENT_KEY, INNGEST_ENV and INNGEST_DEV
  4. Add `inngest-mcp` as a stdio server in your MCP client config
"""

import json
import locale
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from mcp.server.fastmcp import FastMCP
from pydantic import BaseModel, ConfigDict, Field

from inngest_client import (
    InngestAPIError,
    InngestClient,
    InngestConfig,
    InngestConnectionError,
    WorkflowRun,
)

# ─── Configuration ───────────────────────────────────────────────────────────


def _parse_flag(value: Optional[str]) -> Optional[bool]:
    """Parse a tri-state env flag: unset or blank means "not specified"."""
    if value is None or not value.strip():
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(environ: Optional[Dict[str, str]] = None) -> InngestConfig:
    """Build the client configuration from environment variables."""
    env = os.environ if environ is None else environ
    return InngestConfig(
        signing_key=env.get("INNGEST_SIGNING_KEY") or "local-dev-key",
        event_key=env.get("INNGEST_EVENT_KEY") or None,
        base_url=env.get("INNGEST_BASE_URL") or "http://localhost:8288",
        env=env.get("INNGEST_ENV") or None,
        dev_mode=_parse_flag(env.get("INNGEST_DEV")),
    )


LOG_LEVEL = os.environ.get("INNGEST_MCP_LOG_LEVEL", "INFO").upper()
DEFAULT_RUN_LIMIT = 10
DASHBOARD_URI = "inngest://dashboard"

# stdout carries the MCP protocol, so logs go to stderr.
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [inngest-mcp] %(levelname)s %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)

config = load_config()
client = InngestClient(config)

mcp = FastMCP("inngest_mcp")


def _handle_api_error(e: Exception, action: str) -> str:
    """Turn a client failure into the text returned by a tool."""
    logger.warning("Error %s: %s", action, e)
    message = f"Error {action}: {e}"
    if isinstance(e, InngestAPIError):
        if e.status_code == 401:
            return f"{message}\nAuthentication failed. Check your INNGEST_SIGNING_KEY."
        elif e.status_code == 403:
            return f"{message}\nPermission denied. Check the signing key's environment (INNGEST_ENV)."
        elif e.status_code == 404:
            return f"{message}\nResource not found. Check the ID is correct."
        elif e.status_code == 429:
            return f"{message}\nRate limit exceeded. Wait a moment and retry."
    elif isinstance(e, InngestConnectionError):
        return f"{message}\nIs INNGEST_BASE_URL ({client.config.base_url}) reachable?"
    return message


# ─── Formatting Helpers ──────────────────────────────────────────────────────


def _as_aware(ts: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def _format_timestamp(ts: datetime) -> str:
    """Render a timestamp in the local timezone using the locale's format."""
    return _as_aware(ts).astimezone().strftime("%c")


def _duration_seconds(start: datetime, end: datetime) -> int:
    return round((_as_aware(end) - _as_aware(start)).total_seconds())


def _json_block(value: Any) -> str:
    return f"```json\n{json.dumps(value, indent=2, default=str)}\n```"


def _format_run_timing(run: WorkflowRun) -> List[str]:
    lines = [f"**Started:** {_format_timestamp(run.run_started_at)}"]
    if run.ended_at:
        lines.append(f"**Ended:** {_format_timestamp(run.ended_at)}")
        lines.append(f"**Duration:** {_duration_seconds(run.run_started_at, run.ended_at)}s")
    return lines


def _format_run_summary(run: WorkflowRun, index: int) -> str:
    """Format a run for a list of runs."""
    lines = [
        f"## Run {index}",
        f"**Run ID:** {run.run_id}",
        f"**Status:** {run.status}",
    ]
    lines.extend(_format_run_timing(run))
    if run.output:
        lines.append(f"**Output:** {_json_block(run.output)}")
    return "\n".join(lines)


def _format_run_list(title: str, runs: List[WorkflowRun], limit: int) -> str:
    lines = [f"# {title}\n", f"**Total runs:** {len(runs)}\n"]
    for index, run in enumerate(runs[:limit], start=1):
        lines.append(_format_run_summary(run, index))
        lines.append("")
    if len(runs) > limit:
        lines.append(f"_Showing the first {limit} of {len(runs)} runs._")
    return "\n".join(lines)


def _format_run_details(run: WorkflowRun) -> str:
    """Format every field of a single run."""
    lines = [
        f"# Run Details: {run.run_id}\n",
        f"**Run ID:** {run.run_id}",
        f"**Function ID:** {run.function_id}",
        f"**Function Version:** {run.function_version}",
        f"**Environment ID:** {run.environment_id}",
        f"**Event ID:** {run.event_id}",
        f"**Status:** {run.status}",
    ]
    lines.extend(_format_run_timing(run))

    if run.output:
        lines.append(f"\n**Output:**\n{_json_block(run.output)}")

    if run.steps:
        lines.append(f"\n## Steps ({len(run.steps)} found in run response)\n")
        for index, step in enumerate(run.steps, start=1):
            lines.append(f"**{index}. {step.name}** ({step.status})")
            if step.duration_ms:
                lines.append(f"   - Duration: {step.duration_ms}ms")
            if step.error:
                lines.append(f"   - Error: {step.error}")
            lines.append("")
    else:
        lines.append(
            "\n> **Note:** Step-by-step execution timeline is only available in the "
            "Inngest dashboard (uses GraphQL). The REST API provides run-level details only."
        )
    return "\n".join(lines)


# ─── Input Models ────────────────────────────────────────────────────────────


class SendEventInput(BaseModel):
    """Input for sending an event."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    event_name: str = Field(
        ...,
        description="Name of the event to send (e.g., 'app/user.created')",
        min_length=1,
    )
    data: Dict[str, Any] = Field(..., description="Event data payload")


class EventRunsInput(BaseModel):
    """Input for listing the runs an event triggered."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    event_id: str = Field(..., description="ID of the event to check runs for", min_length=1)
    limit: int = Field(
        default=DEFAULT_RUN_LIMIT, description="Number of recent runs to show", ge=1
    )


class FunctionRunsInput(BaseModel):
    """Input for listing recent runs of a function."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    function_id: str = Field(..., description="ID of the Inngest function", min_length=1)
    limit: int = Field(
        default=DEFAULT_RUN_LIMIT, description="Number of recent runs to show", ge=1
    )


class RunDetailsInput(BaseModel):
    """Input for retrieving a single run."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    run_id: str = Field(..., description="Specific run ID to get details for", min_length=1)


class ManageRunInput(BaseModel):
    """Input for cancelling or replaying a run."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    run_id: str = Field(..., description="Specific run ID to act on", min_length=1)
    action: Literal["cancel", "replay"] = Field(..., description="Action to perform")


class BulkCancelInput(BaseModel):
    """Input for cancelling every run that matches a filter."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    function_id: Optional[str] = Field(
        default=None, description="Only cancel runs of this function"
    )
    started_after: Optional[str] = Field(
        default=None,
        description="Only cancel runs started after this time (ISO8601, e.g., '2025-01-15T00:00:00Z')",
    )
    started_before: Optional[str] = Field(
        default=None,
        description="Only cancel runs started before this time (ISO8601)",
    )
    condition: Optional[str] = Field(
        default=None,
        description="CEL expression the run's event must match (e.g., \"event.data.userId == '42'\")",
    )


# ─── Tools ───────────────────────────────────────────────────────────────────


@mcp.tool(
    name="send_event",
    annotations={
        "title": "Send Inngest Event",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    },
)
async def send_event(params: SendEventInput) -> str:
    """Send an event to Inngest to trigger functions.

    Args:
        params: Event name and data payload.

    Returns:
        str: Confirmation with the event ID and the payload that was sent.
    """
    logger.info("send_event name=%s", params.event_name)
    try:
        event_id = await client.send_event(params.event_name, params.data)
        return (
            "**Event sent successfully**\n\n"
            f"**Event Name:** {params.event_name}\n"
            f"**Event ID:** {event_id or 'unknown'}\n"
            f"**Data:** {_json_block(params.data)}\n\n"
            "The event has been sent to Inngest and will trigger any functions "
            "listening for this event."
        )
    except Exception as e:
        return _handle_api_error(e, "sending event")


@mcp.tool(
    name="get_event_runs",
    annotations={
        "title": "Get Event Runs",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    },
)
async def get_event_runs(params: EventRunsInput) -> str:
    """Get the runs triggered by a specific event ID.

    Args:
        params: Event ID and how many runs to show.

    Returns:
        str: Run IDs, status, timing and output for each run.
    """
    logger.info("get_event_runs event_id=%s", params.event_id)
    try:
        runs = await client.get_event_runs(params.event_id)
        if not runs:
            return f"No runs found for event ID: {params.event_id}"
        return _format_run_list(f"Event Runs: {params.event_id}", runs, params.limit)
    except Exception as e:
        return _handle_api_error(e, "getting event runs")


@mcp.tool(
    name="get_function_runs",
    annotations={
        "title": "Get Function Runs",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    },
)
async def get_function_runs(params: FunctionRunsInput) -> str:
    """Get recent runs of an Inngest function.

    The local dev server keeps no run history, so this returns nothing there.

    Args:
        params: Function ID and how many runs to show.

    Returns:
        str: Run IDs, status, timing and output for each run.
    """
    logger.info("get_function_runs function_id=%s", params.function_id)
    try:
        runs = await client.get_function_runs(params.function_id, limit=params.limit)
        if not runs:
            return f"No runs found for function ID: {params.function_id}"
        return _format_run_list(f"Function Runs: {params.function_id}", runs, params.limit)
    except Exception as e:
        return _handle_api_error(e, "getting function runs")


@mcp.tool(
    name="get_run_details",
    annotations={
        "title": "Get Run Details",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    },
)
async def get_run_details(params: RunDetailsInput) -> str:
    """Get run details including status, duration, and output.

    The step-by-step timeline is not available via the REST API.

    Args:
        params: Run ID to retrieve.

    Returns:
        str: Formatted run details.
    """
    logger.info("get_run_details run_id=%s", params.run_id)
    try:
        run = await client.get_run_details(params.run_id)
        return _format_run_details(run)
    except Exception as e:
        return _handle_api_error(e, "getting run details")


@mcp.tool(
    name="manage_run",
    annotations={
        "title": "Cancel or Replay Run",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": False,
        "openWorldHint": True,
    },
)
async def manage_run(params: ManageRunInput) -> str:
    """Cancel or replay a specific Inngest run.

    Args:
        params: Run ID and the action to perform.

    Returns:
        str: Confirmation of the action.
    """
    logger.info("manage_run run_id=%s action=%s", params.run_id, params.action)
    try:
        if params.action == "cancel":
            await client.cancel_run(params.run_id)
            return f"Cancelled run {params.run_id}"
        await client.replay_run(params.run_id)
        return f"Replayed run {params.run_id}"
    except Exception as e:
        return _handle_api_error(e, "managing run")


@mcp.tool(
    name="bulk_cancel_runs",
    annotations={
        "title": "Bulk Cancel Runs",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": False,
        "openWorldHint": True,
    },
)
async def bulk_cancel_runs(params: BulkCancelInput) -> str:
    """Cancel every run matching a function, time window and/or expression.

    Args:
        params: Optional filters. Omitted filters are not sent.

    Returns:
        str: Confirmation with the cancellation ID.
    """
    logger.info("bulk_cancel_runs function_id=%s", params.function_id)
    try:
        result = await client.bulk_cancel_runs(
            function_id=params.function_id,
            started_after=params.started_after,
            started_before=params.started_before,
            condition=params.condition,
        )
        cancellation_id = "unknown"
        if isinstance(result, dict):
            cancellation_id = result.get("cancellationId") or result.get("id") or cancellation_id
        return f"**Bulk cancellation started**\n\n**Cancellation ID:** {cancellation_id}"
    except Exception as e:
        return _handle_api_error(e, "cancelling runs")


@mcp.tool(
    name="debug_connection",
    annotations={
        "title": "Debug Inngest Connection",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)
async def debug_connection() -> str:
    """Debug Inngest API connection and configuration.

    Returns:
        str: Configuration summary plus the last API response and error.
    """
    cfg = client.config
    last_response = client.last_response
    last_error = client.last_error
    mode = "local dev server" if cfg.is_local else "Inngest Cloud"
    return (
        "**Inngest Configuration:**\n"
        f"- Base URL: {cfg.base_url}\n"
        f"- Mode: {mode}\n"
        f"- Has Signing Key: {bool(cfg.signing_key)}\n"
        f"- Environment: {cfg.env or 'not set'}\n\n"
        f"**Last API Response:** {last_response.model_dump_json(indent=2) if last_response else 'None'}\n\n"
        f"**Last Error:** {last_error.model_dump_json(indent=2) if last_error else 'None'}"
    )


# ─── Resources ───────────────────────────────────────────────────────────────


@mcp.resource(
    DASHBOARD_URI,
    name="event-dashboard",
    description="Overview of the event management tools and current configuration",
    mime_type="text/markdown",
)
def event_dashboard() -> str:
    cfg = client.config
    return f"""# Inngest Event Manager

## Available Tools
- **send_event**: Send events to trigger Inngest functions
- **get_event_runs**: Get runs for a specific event ID
- **get_function_runs**: Get recent runs of a function
- **get_run_details**: Get status, duration and output for a run
- **manage_run**: Cancel or replay specific runs
- **bulk_cancel_runs**: Cancel every run matching a filter
- **debug_connection**: Debug API connection issues

## Configuration
- Base URL: {cfg.base_url}
- Signing Key: {'Configured' if cfg.signing_key else 'Missing'}
- Event Key: {'Configured' if cfg.event_key else 'Optional'}
- Environment: {cfg.env or 'Default'}

## Supported Operations
- Send events to trigger functions
- Monitor event runs and execution status
- Inspect run output and timing
- Replay or cancel individual runs, or cancel runs in bulk
- Troubleshoot API connection issues
"""


# ─── Entry Point ─────────────────────────────────────────────────────────────


def _handle_signal(signum: int, _frame: Any) -> None:
    logger.info("Received signal %s, shutting down", signum)
    sys.exit(0)


def main() -> None:
    try:
        locale.setlocale(locale.LC_ALL, "")
    except locale.Error as e:
        logger.warning("Could not apply the system locale, using C formats: %s", e)
    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    logger.info("Starting Inngest MCP server against %s", config.base_url)
    try:
        mcp.run()
    except Exception:
        logger.exception("Inngest MCP server failed")
        sys.exit(1)


if __name__ == "__main__":
    main()

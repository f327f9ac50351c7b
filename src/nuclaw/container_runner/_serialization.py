"""Serialization helpers — the JSON boundary with the worker.

Converts ContainerInput to the camelCase document written to the IPC
input directory, and decodes the marker-framed result the worker prints
into its combined output stream.
"""

from __future__ import annotations

import json
from typing import Any

from nuclaw.config import Settings
from nuclaw.errors import (
    DuplicateMarkerError,
    InvalidPayloadError,
    MissingMarkerError,
    ReversedMarkerError,
)
from nuclaw.types import ContainerInput, ContainerOutput


def _input_to_dict(input_data: ContainerInput) -> dict[str, Any]:
    """Convert ContainerInput to the document the worker reads on startup."""
    d: dict[str, Any] = {
        "prompt": input_data.prompt,
        "groupContextPath": input_data.group_context_path,
        "metadata": input_data.metadata,
    }
    if input_data.session_id is not None:
        d["sessionId"] = input_data.session_id
    return d


def parse_container_output(raw: str, *, success: bool = True) -> ContainerOutput:
    """Extract the single marker-framed JSON payload from raw worker output.

    Text outside the markers is incidental diagnostics and is ignored.
    Output with no markers at all is the "empty output" case: a valid
    result with empty text whose status follows *success*.  Any partial or
    broken framing raises, regardless of *success*.

    Raises:
        MissingMarkerError: only one of the two markers is present.
        ReversedMarkerError: the end marker precedes the start marker.
        DuplicateMarkerError: either marker appears more than once.
        InvalidPayloadError: the framed text is not a valid result object.
    """
    start, end = Settings.OUTPUT_START_MARKER, Settings.OUTPUT_END_MARKER
    start_count = raw.count(start)
    end_count = raw.count(end)

    if start_count == 0 and end_count == 0:
        return ContainerOutput(status="success" if success else "error", text="", raw=raw)

    if start_count > 1 or end_count > 1:
        raise DuplicateMarkerError(
            f"Expected one marker pair, found {start_count} start and {end_count} end markers"
        )
    if start_count == 0:
        raise MissingMarkerError("Output has an end marker but no start marker")
    if end_count == 0:
        raise MissingMarkerError("Output has a start marker but no end marker")

    start_idx = raw.find(start)
    end_idx = raw.find(end)
    if end_idx < start_idx:
        raise ReversedMarkerError("End marker appears before start marker")

    payload = raw[start_idx + len(start) : end_idx].strip()
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise InvalidPayloadError(payload, f"invalid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise InvalidPayloadError(payload, "payload must be a JSON object")

    status = data.get("status")
    if status not in ("success", "error"):
        raise InvalidPayloadError(payload, f"unknown status {status!r}")

    text = data.get("text", data.get("result"))
    if text is None and status == "error":
        text = data.get("error")
    if text is not None and not isinstance(text, str):
        raise InvalidPayloadError(payload, "text must be a string")

    session_id = data.get("sessionId") or data.get("newSessionId") or data.get("session_id")
    if session_id is not None and not isinstance(session_id, str):
        raise InvalidPayloadError(payload, "sessionId must be a string")

    return ContainerOutput(status=status, text=text, session_id=session_id, raw=raw)

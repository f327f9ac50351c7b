"""Tests for marker-framed output parsing."""

from __future__ import annotations

import json

import pytest

from nuclaw.config import Settings
from nuclaw.container_runner import parse_container_output
from nuclaw.errors import (
    DuplicateMarkerError,
    InvalidPayloadError,
    MissingMarkerError,
    ParseError,
    ReversedMarkerError,
)

START = Settings.OUTPUT_START_MARKER
END = Settings.OUTPUT_END_MARKER


def _framed(payload: str, before: str = "", after: str = "") -> str:
    return f"{before}{START}\n{payload}\n{END}{after}"


class TestWellFormed:
    def test_extracts_status_text_and_session(self):
        raw = _framed('{"status":"success","text":"hi","sessionId":"s1"}')
        out = parse_container_output(raw)
        assert out.status == "success"
        assert out.text == "hi"
        assert out.session_id == "s1"
        assert out.raw == raw

    def test_ignores_diagnostics_outside_markers(self):
        raw = _framed(
            '{"status":"success","text":"done"}',
            before="npm WARN deprecated\nbooting agent...\n",
            after="\ntrailing log line\n",
        )
        assert parse_container_output(raw).text == "done"

    def test_error_status_passes_through(self):
        raw = _framed('{"status":"error","error":"agent crashed"}')
        out = parse_container_output(raw)
        assert out.status == "error"
        assert out.text == "agent crashed"

    def test_result_key_used_when_text_absent(self):
        out = parse_container_output(_framed('{"status":"success","result":"from result"}'))
        assert out.text == "from result"

    def test_new_session_id_fallback(self):
        out = parse_container_output(
            _framed('{"status":"success","text":"x","newSessionId":"sess-9"}')
        )
        assert out.session_id == "sess-9"

    def test_markers_inside_text_value_are_counted(self):
        # A marker string embedded in the payload makes the framing ambiguous.
        payload = json.dumps({"status": "success", "text": f"echo {END}"})
        with pytest.raises(DuplicateMarkerError):
            parse_container_output(_framed(payload))


class TestEmptyOutput:
    def test_no_markers_is_empty_success(self):
        out = parse_container_output("just some logs\n")
        assert out.status == "success"
        assert out.text == ""

    def test_no_markers_with_failure_is_error(self):
        out = parse_container_output("", success=False)
        assert out.status == "error"
        assert out.text == ""


class TestBrokenFraming:
    def test_start_without_end(self):
        with pytest.raises(MissingMarkerError):
            parse_container_output(f'{START}\n{{"status":"success"}}\n')

    def test_end_without_start(self):
        with pytest.raises(MissingMarkerError):
            parse_container_output(f'{{"status":"success"}}\n{END}\n')

    def test_end_before_start(self):
        with pytest.raises(ReversedMarkerError):
            parse_container_output(f'{END}\n{{"status":"success"}}\n{START}\n')

    def test_two_pairs(self):
        raw = _framed('{"status":"success","text":"a"}') + _framed(
            '{"status":"success","text":"b"}'
        )
        with pytest.raises(DuplicateMarkerError):
            parse_container_output(raw)

    def test_broken_framing_raises_even_on_failure(self):
        with pytest.raises(MissingMarkerError):
            parse_container_output(f"{START}\n", success=False)

    def test_all_framing_errors_are_parse_errors(self):
        with pytest.raises(ParseError):
            parse_container_output(f"{END}{START}")


class TestInvalidPayload:
    def test_not_json(self):
        with pytest.raises(InvalidPayloadError) as exc_info:
            parse_container_output(_framed("not json at all"))
        assert exc_info.value.payload == "not json at all"
        assert exc_info.value.kind == "invalid_payload"

    def test_not_an_object(self):
        with pytest.raises(InvalidPayloadError):
            parse_container_output(_framed('["success"]'))

    def test_unknown_status(self):
        with pytest.raises(InvalidPayloadError, match="unknown status"):
            parse_container_output(_framed('{"status":"maybe","text":"x"}'))

    def test_missing_status(self):
        with pytest.raises(InvalidPayloadError):
            parse_container_output(_framed('{"text":"x"}'))

    def test_non_string_text(self):
        with pytest.raises(InvalidPayloadError):
            parse_container_output(_framed('{"status":"success","text":42}'))

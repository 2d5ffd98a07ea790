"""Tests for the stdin runner."""

import io
from pathlib import Path

import pytest

from beacon.runner import parse_line, run
from beacon.storage import MemoryStore

from conftest import FakeTransport, make_settings


class TestParseLine:
    def test_valid_line(self) -> None:
        assert parse_line('{"collection": " PAGEVIEW ", "payload": {"a": 1}}\n') == (
            "PAGEVIEW",
            {"a": 1},
        )

    def test_missing_payload_becomes_empty(self) -> None:
        assert parse_line('{"collection": "PING", "payload": [1]}') == ("PING", {})

    @pytest.mark.parametrize(
        "line",
        ["", "   \n", "not json", "[1, 2]", '{"payload": {}}', '{"collection": ""}'],
    )
    def test_unusable_lines(self, line: str) -> None:
        assert parse_line(line) is None


@pytest.mark.asyncio
async def test_run_records_stream_and_flushes(tmp_path: Path) -> None:
    transport = FakeTransport()
    stream = io.StringIO(
        '{"collection": "PAGEVIEW", "payload": {"location": "/"}}\n'
        "garbage\n"
        '{"collection": "ENROLLMENT", "payload": {"step": 1}}\n'
    )
    settings = make_settings(transport={"api_key": "k-test"})

    diagnostics = await run(
        stream, settings, project_root=tmp_path, store=MemoryStore(), transport=transport
    )

    assert [e.collection for batch in transport.sent for e in batch] == ["PAGEVIEW", "ENROLLMENT"]
    assert diagnostics["lifecycle"] == "closed"
    assert diagnostics["acknowledged"] == 2
    assert diagnostics["pending"] == 0
    assert transport.closed is True

from __future__ import annotations

import json
from pathlib import Path

from llm_key_proxy.gateway.request_log import JsonlRequestLogger, RequestLogBuffer


def test_request_log_buffer_keeps_most_recent_events() -> None:
    buffer = RequestLogBuffer(max_events=2)
    buffer.append({"request_id": "a"})
    buffer.append({"request_id": "b"})
    buffer.append({"request_id": "c"})

    assert [event["request_id"] for event in buffer.recent()] == ["b", "c"]
    assert [event["request_id"] for event in buffer.recent(1)] == ["c"]
    assert buffer.recent(0) == []


def test_jsonl_request_logger_writes_records_on_close(tmp_path: Path) -> None:
    log_path = tmp_path / "nested" / "requests.jsonl"
    request_logger = JsonlRequestLogger(path=str(log_path), enabled=True)
    request_logger.log({"event": "proxy_request", "request_id": "req-1", "status": 200})
    request_logger.close()

    lines = log_path.read_text(encoding="utf-8").strip().splitlines()
    payload = json.loads(lines[0])
    assert payload["event"] == "proxy_request"
    assert payload["request_id"] == "req-1"
    assert "ts" in payload


def test_disabled_jsonl_request_logger_writes_nothing(tmp_path: Path) -> None:
    log_path = tmp_path / "requests.jsonl"
    request_logger = JsonlRequestLogger(path=str(log_path), enabled=False)
    request_logger.log({"event": "proxy_request"})
    request_logger.close()
    assert not log_path.exists()


def test_jsonl_request_logger_reports_dropped_records(tmp_path: Path) -> None:
    log_path = tmp_path / "requests.jsonl"
    request_logger = JsonlRequestLogger(path=str(log_path), enabled=True)
    request_logger._dropped = 3
    request_logger.log({"event": "proxy_request", "request_id": "req-2"})
    request_logger.close()

    records = [
        json.loads(line)
        for line in log_path.read_text(encoding="utf-8").strip().splitlines()
    ]
    assert [record["event"] for record in records] == [
        "proxy_request",
        "request_log_dropped_records",
    ]
    assert records[1]["dropped_count"] == 3

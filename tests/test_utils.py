import structlog

from batchmux.utils.files import read_jsonl_file
from batchmux.utils.logging import logging_context


def test_read_jsonl_file_skips_blank_lines(tmp_path):
    file_path = tmp_path / "requests.jsonl"
    file_path.write_text('{"endpoint": "/a"}\n\n{"endpoint": "/b", "method": "POST"}\n')

    assert read_jsonl_file(file_path=file_path) == [
        {"endpoint": "/a"},
        {"endpoint": "/b", "method": "POST"},
    ]


def test_logging_context_binds_batch_id():
    with logging_context(batch_id="outer"):
        assert structlog.contextvars.get_contextvars()["batch_id"] == "outer"
        with logging_context(batch_id="inner"):
            assert structlog.contextvars.get_contextvars()["batch_id"] == "inner"
        assert structlog.contextvars.get_contextvars()["batch_id"] == "outer"
    assert "batch_id" not in structlog.contextvars.get_contextvars()

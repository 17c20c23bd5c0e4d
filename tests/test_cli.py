import asyncio
import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from batchmux.cli.main import app, replay_requests
from batchmux.config import BatchManagerConfig
from batchmux.models import RequestDescriptor

runner = CliRunner()


def _write_requests(path: Path, lines: list[dict]) -> Path:
    path.write_text("\n".join(json.dumps(line) for line in lines) + "\n")
    return path


@pytest.fixture
def requests_file(tmp_path: Path) -> Path:
    return _write_requests(
        tmp_path / "requests.jsonl",
        [
            {"endpoint": "/api/users/1"},
            {"endpoint": "/api/users/1"},
            {"endpoint": "/api/posts", "method": "POST", "data": {"title": "a"}},
            {"endpoint": "/api/users/2", "priority": "urgent"},
        ],
    )


def test_replay_dry_run(requests_file: Path) -> None:
    result = runner.invoke(app, ["replay", str(requests_file), "--dry-run"])

    assert result.exit_code == 0
    assert "Batch summary" in result.output
    assert "Outcomes" in result.output


def test_replay_with_window_options(requests_file: Path) -> None:
    result = runner.invoke(
        app,
        ["replay", str(requests_file), "--dry-run", "--window", "5", "--max-window", "20"],
    )

    assert result.exit_code == 0


def test_replay_missing_file(tmp_path: Path) -> None:
    result = runner.invoke(app, ["replay", str(tmp_path / "missing.jsonl"), "--dry-run"])

    assert result.exit_code != 0


def test_replay_invalid_request(tmp_path: Path) -> None:
    path = _write_requests(tmp_path / "bad.jsonl", [{"endpoint": "/a", "method": "FETCH"}])

    result = runner.invoke(app, ["replay", str(path), "--dry-run"])

    assert result.exit_code != 0


def test_replay_rejects_inconsistent_windows(requests_file: Path) -> None:
    result = runner.invoke(
        app,
        ["replay", str(requests_file), "--dry-run", "--window", "50", "--max-window", "10"],
    )

    assert result.exit_code != 0


def test_replay_rejects_negative_window(requests_file: Path) -> None:
    result = runner.invoke(app, ["replay", str(requests_file), "--window", "-1"])

    assert result.exit_code != 0


def test_replay_empty_file(tmp_path: Path) -> None:
    path = tmp_path / "empty.jsonl"
    path.write_text("\n")

    result = runner.invoke(app, ["replay", str(path)])

    assert result.exit_code == 0
    assert "No requests to replay" in result.output


def test_replay_requests_counts_outcomes() -> None:
    config = BatchManagerConfig(dry_run=True)
    descriptors = [
        RequestDescriptor(endpoint="/a"),
        RequestDescriptor(endpoint="/a"),
        RequestDescriptor(endpoint="/b", method="DELETE"),
    ]

    report, outcomes = asyncio.run(replay_requests(config=config, descriptors=descriptors))

    assert outcomes == {"ok": 3}
    assert report.summary.potential_requests == 3
    assert report.summary.requests_deduped == 1
    assert len(report.history) == 1

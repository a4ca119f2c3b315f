from __future__ import annotations

from typing import List

import pytest

import crawl_heated_issues


class _RecordingRepository:
    created: List["_RecordingRepository"] = []

    def __init__(self, connection_string=None, max_connections: int = 5) -> None:
        self.connection_string = connection_string
        self.calls: List[str] = []
        _RecordingRepository.created.append(self)

    def connect(self) -> None:
        self.calls.append("connect")

    def initialize_schema(self) -> None:
        self.calls.append("initialize_schema")

    def close(self) -> None:
        self.calls.append("close")


@pytest.fixture
def recording_repository(monkeypatch: pytest.MonkeyPatch):
    _RecordingRepository.created = []
    monkeypatch.setattr(crawl_heated_issues, "DatabaseRepository", _RecordingRepository)
    return _RecordingRepository


def test_init_schema_creates_tables_without_crawling(
    monkeypatch: pytest.MonkeyPatch, recording_repository
) -> None:
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)

    status = crawl_heated_issues.main(["--init-schema", "-d", "postgresql://localhost/heated"])

    assert status == 0
    (repository,) = recording_repository.created
    assert repository.connection_string == "postgresql://localhost/heated"
    assert repository.calls == ["connect", "initialize_schema", "close"]


def test_missing_token_fails_the_run(monkeypatch: pytest.MonkeyPatch, recording_repository) -> None:
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.setattr(crawl_heated_issues, "install_stop_handlers", lambda stop_event: None)

    status = crawl_heated_issues.main(["-d", "postgresql://localhost/heated"])

    assert status == 1
    (repository,) = recording_repository.created
    assert repository.calls == ["connect", "close"]


def test_flags_override_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ITERATIONS", "5")
    monkeypatch.setenv("WAIT_ON_RATE_LIMIT", "true")

    args = crawl_heated_issues.parse_args(["-i", "2", "--no-wait", "-w", "8", "--log-level", "debug"])
    config = crawl_heated_issues.build_config(args)

    assert config.iterations == 2
    assert config.wait_on_rate_limit is False
    assert config.max_workers == 8
    assert config.log_level == "DEBUG"
    assert args.init_schema is False

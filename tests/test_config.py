from __future__ import annotations

import pytest

from advisor.config import Settings


def test_env_file_is_read_and_unknown_keys_ignored(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env.backend").write_text(
        "MAX_CONCURRENT_JOBS=3\nDEFAULT_MODELS=alpha, beta ,\nSOME_OTHER_SERVICE_KEY=x\n",
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("MAX_CONCURRENT_JOBS", raising=False)
    monkeypatch.delenv("DEFAULT_MODELS", raising=False)

    cfg = Settings()
    assert cfg.MAX_CONCURRENT_JOBS == 3
    assert cfg.model_list == ["alpha", "beta"]


def test_retry_config_converts_milliseconds() -> None:
    retry = Settings(RETRY_INITIAL_DELAY_MS=3000, RETRY_MAX_DELAY_MS=10000, RETRY_TIMEOUT_MS=30000).retry_config()
    assert (retry.initial_delay, retry.max_delay, retry.per_attempt_timeout) == (3.0, 10.0, 30.0)


def test_invalid_concurrency_is_rejected() -> None:
    with pytest.raises(ValueError):
        Settings(MAX_CONCURRENT_JOBS=0)

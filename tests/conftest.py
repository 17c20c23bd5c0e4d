import pytest

from batchmux.context import reset_default_batch_manager


@pytest.fixture(autouse=True)
def test_unset_env(monkeypatch):
    for name in (
        "BATCHMUX_BATCH_ENDPOINT",
        "BATCHMUX_BASE_URL",
        "BATCHMUX_MAX_BATCH_SIZE",
        "BATCHMUX_BATCH_WINDOW_SECONDS",
        "BATCHMUX_MAX_BATCH_WINDOW_SECONDS",
        "BATCHMUX_DEDUPE",
        "BATCHMUX_DRY_RUN",
        "BATCHMUX_REQUEST_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_default_manager():
    reset_default_batch_manager()
    yield
    reset_default_batch_manager()

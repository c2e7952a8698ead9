import pytest

@pytest.fixture(autouse=True)
def _test_env(tmp_path, monkeypatch):
    # Ensure tests don’t write to repo root
    metrics_dir = tmp_path / "metrics"
    metrics_dir.mkdir(exist_ok=True)
    monkeypatch.setenv("CALLCOACH_METRICS_FILE", str(metrics_dir / "turns.ndjson"))
    yield

"""Unit tests for chimera/healthcheck.py. No real API calls."""

from chimera.healthcheck import run_health_checks
from chimera.providers.base import TransportError
from tests.conftest import FakeClient


async def test_all_models_pass():
    client = FakeClient({"vendor/a": ["OK"], "vendor/b": ["OK"]})

    results = await run_health_checks(client, ["vendor/a", "vendor/b"])

    assert results == {"vendor/a": (True, ""), "vendor/b": (True, "")}
    assert all(not c.streamed for c in client.calls)


async def test_one_model_fails():
    client = FakeClient({"vendor/a": ["OK"], "vendor/b": [TransportError("vendor/b", "API request failed: 403")]})

    results = await run_health_checks(client, ["vendor/a", "vendor/b"])

    assert results["vendor/a"] == (True, "")
    ok, err = results["vendor/b"]
    assert ok is False
    assert "403" in err


async def test_duplicate_models_pinged_once():
    client = FakeClient()

    results = await run_health_checks(client, ["vendor/a", "vendor/a"])

    assert list(results) == ["vendor/a"]
    assert len(client.calls) == 1


async def test_empty_model_list():
    assert await run_health_checks(FakeClient(), []) == {}


async def test_timeout_counts_as_failure(monkeypatch):
    import chimera.healthcheck as hc

    monkeypatch.setattr(hc, "_TIMEOUT_SEC", 0.05)
    client = FakeClient({"vendor/slow": [(9999, "late")]})

    results = await run_health_checks(client, ["vendor/slow"])

    ok, err = results["vendor/slow"]
    assert ok is False
    assert err
    assert client.cancelled == ["vendor/slow"]

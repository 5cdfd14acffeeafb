import importlib

import pytest


@pytest.fixture
def reload_vars(monkeypatch):
    import gateway.vars as vars_module

    yield vars_module
    monkeypatch.undo()
    importlib.reload(vars_module)


def test_upstream_timeout_is_clamped(monkeypatch, reload_vars):
    monkeypatch.setenv("UPSTREAM_TIMEOUT", "90")
    importlib.reload(reload_vars)
    assert reload_vars.UPSTREAM_TIMEOUT == 20.0

    monkeypatch.setenv("UPSTREAM_TIMEOUT", "1")
    importlib.reload(reload_vars)
    assert reload_vars.UPSTREAM_TIMEOUT == 8.0


def test_hardened_prefixes_parsing(monkeypatch, reload_vars):
    monkeypatch.setenv("WAF_HARDENED_PREFIXES", " /futures/data/ , /sapi/ ,,")
    importlib.reload(reload_vars)

    assert reload_vars.WAF_HARDENED_PREFIXES == ["/futures/data/", "/sapi/"]


def test_cache_tiers_defaults(monkeypatch, reload_vars):
    for name in ("PRICE_CACHE_TTL", "STATS_CACHE_TTL", "STALE_CACHE_TTL"):
        monkeypatch.delenv(name, raising=False)
    importlib.reload(reload_vars)

    assert reload_vars.PRICE_CACHE_TTL == 2.0
    assert reload_vars.STATS_CACHE_TTL == 5.0
    assert reload_vars.STALE_CACHE_TTL == 60.0
    assert reload_vars.STALE_CACHE_TTL > reload_vars.STATS_CACHE_TTL

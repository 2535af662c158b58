"""
Tests for environment-driven settings.
"""
from config import Settings


def test_defaults(monkeypatch):
    for var in ("CACHE_TTL_SEARCH", "DEFAULT_COUNTRY", "TMDB_API_KEY", "DATABASE_PATH"):
        monkeypatch.delenv(var, raising=False)

    settings = Settings()
    assert settings.cache_ttls() == {
        "search": 3600,
        "details": 7200,
        "offers": 21600,
        "ratings": 86400,
        "metadata": 604800,
    }
    assert settings.default_country == "US"
    assert settings.tmdb_api_key is None


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("CACHE_TTL_OFFERS", "60")
    monkeypatch.setenv("ENABLE_DEDUPLICATION", "false")
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "x.db"))
    monkeypatch.setenv("SIMKL_API_KEY", "")

    settings = Settings()
    assert settings.cache_ttls()["offers"] == 60
    assert settings.enable_deduplication is False
    assert settings.resolve_database_path() == str(tmp_path / "x.db")
    assert settings.simkl_api_key is None

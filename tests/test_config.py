from fieldrelay.core.config import Settings


def test_defaults(monkeypatch) -> None:
    for name in ("FIELDRELAY_PUBLIC_URL", "FIELDRELAY_PORT", "TELEGRAM_POLLING", "FIELDRELAY_DATA_DIR"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings.from_env()
    assert settings.port == 8080
    assert settings.telegram_polling is False
    assert settings.max_integrations_per_owner == 10
    assert settings.data_dir.endswith("data")

def test_env_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("FIELDRELAY_PUBLIC_URL", "https://relay.example/")
    monkeypatch.setenv("FIELDRELAY_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("TELEGRAM_POLLING", "yes")
    monkeypatch.setenv("FIELDRELAY_INGEST_RATE_LIMIT_CALLS", "5")
    settings = Settings.from_env()
    assert settings.data_dir == str(tmp_path)
    assert settings.telegram_polling is True
    assert settings.ingest_rate_limit_calls == 5
    assert settings.webhook_url("abc") == "https://relay.example/integrations/abc"

import io
import json
from datetime import date
from http.client import IncompleteRead, RemoteDisconnected
from pathlib import Path
from urllib.error import URLError

import pytest

import fx_rates
import kvstore
from config import Settings
from fx_rates import FxRateService
from kvstore import AppSettings, JsonKeyValueStore


def _settings() -> Settings:
    return Settings(
        database_url="sqlite:///:memory:",
        preferences_path=Path("unused.json"),
        default_currency="USD",
        fx_base_url="https://rates.example/currency-api",
        fx_timeout_secs=1.0,
        migration_verify_before_clear=False,
        log_level="INFO",
    )


@pytest.fixture(autouse=True)
def _clear_rate_cache():
    fx_rates._fetch_currency_api_quote.cache_clear()
    yield
    fx_rates._fetch_currency_api_quote.cache_clear()


def _fake_urlopen(payload: dict, calls: list[str]):
    def fake(req, timeout):
        calls.append(req.full_url)
        return io.BytesIO(json.dumps(payload).encode("utf-8"))

    return fake


def test_convert_uses_dated_rate(monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(
        fx_rates,
        "urlopen",
        _fake_urlopen({"date": "2024-03-01", "eur": {"usd": 1.25, "gbp": 0.85}}, calls),
    )
    service = FxRateService(_settings())

    converted = service.convert(10, "EUR", "USD", date(2024, 3, 1), today=date(2024, 6, 1))
    again = service.convert(4, "eur", "usd", date(2024, 3, 1), today=date(2024, 6, 1))

    assert converted == pytest.approx(12.5)
    assert again == pytest.approx(5.0)
    assert calls == ["https://rates.example/currency-api@2024-03-01/v1/currencies/eur.json"]


def test_future_dates_use_latest(monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(
        fx_rates,
        "urlopen",
        _fake_urlopen({"date": "2024-06-01", "usd": {"jpy": 150.0}}, calls),
    )
    service = FxRateService(_settings())

    assert service.convert(2, "USD", "JPY", date(2024, 7, 1), today=date(2024, 6, 1)) == 300
    assert calls[0].endswith("@latest/v1/currencies/usd.json")


def test_same_currency_skips_lookup(monkeypatch) -> None:
    def boom(req, timeout):
        raise AssertionError("no lookup expected")

    monkeypatch.setattr(fx_rates, "urlopen", boom)
    assert FxRateService(_settings()).convert(7.5, "usd", "USD", date(2024, 1, 1)) == 7.5


def test_network_failure_returns_unconverted_amount(monkeypatch) -> None:
    def offline(req, timeout):
        raise URLError("offline")

    monkeypatch.setattr(fx_rates, "urlopen", offline)
    service = FxRateService(_settings())

    assert service.convert(20, "EUR", "USD", date(2024, 1, 1), today=date(2024, 2, 1)) == 20
    with pytest.raises(RuntimeError):
        service.quote("EUR", date(2024, 1, 1), today=date(2024, 2, 1))


def test_missing_rate_converts_at_par(monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(
        fx_rates,
        "urlopen",
        _fake_urlopen({"date": "2024-03-01", "eur": {"gbp": 0.85}}, calls),
    )
    service = FxRateService(_settings())
    assert service.convert(10, "EUR", "CHF", date(2024, 3, 1), today=date(2024, 3, 2)) == 10


def test_app_settings_currency_round_trips_through_store(tmp_path) -> None:
    path = tmp_path / "prefs" / "preferences.json"
    settings = AppSettings(JsonKeyValueStore(path), default_currency="usd")
    assert settings.selected_currency == "USD"

    settings.selected_currency = " eur "

    assert AppSettings(JsonKeyValueStore(path)).selected_currency == "EUR"


def test_unreadable_store_file_is_empty(tmp_path) -> None:
    path = tmp_path / "preferences.json"
    path.write_text("{broken", encoding="utf-8")

    store = JsonKeyValueStore(path)

    assert store.get("selectedCurrency") is None
    store.set("selectedCurrency", "GBP")
    assert json.loads(path.read_text(encoding="utf-8")) == {"selectedCurrency": "GBP"}


@pytest.mark.parametrize(
    "failure",
    [
        RemoteDisconnected("Remote end closed connection without response"),
        ConnectionResetError("connection reset by peer"),
        IncompleteRead(b"{\"date\": "),
    ],
)
def test_dropped_connection_returns_unconverted_amount(monkeypatch, failure) -> None:
    def dropped(req, timeout):
        raise failure

    monkeypatch.setattr(fx_rates, "urlopen", dropped)
    service = FxRateService(_settings())

    assert service.convert(20, "EUR", "USD", date(2024, 1, 1), today=date(2024, 2, 1)) == 20


def test_undecodable_body_returns_unconverted_amount(monkeypatch) -> None:
    monkeypatch.setattr(fx_rates, "urlopen", lambda req, timeout: io.BytesIO(b"\xff\xfe\x00"))
    service = FxRateService(_settings())

    assert service.convert(20, "EUR", "USD", date(2024, 1, 1), today=date(2024, 2, 1)) == 20


def test_failed_store_write_leaves_no_temp_file(tmp_path, monkeypatch) -> None:
    path = tmp_path / "preferences.json"
    store = JsonKeyValueStore(path)

    def full_disk(src, dst):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(kvstore.os, "replace", full_disk)

    assert store.set("selectedCurrency", "GBP") is False
    assert store.get("selectedCurrency") == "GBP"
    assert not path.exists()
    assert list(tmp_path.iterdir()) == []

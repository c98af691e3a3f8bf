"""Tests for YAML settings loading."""
import pytest

from config.settings import Settings, load_settings

CONFIG = """
app_name: TestBot
timezone: UTC
database:
  url: "sqlite:///${TEST_DB_DIR}/bot.db"
  store_backend: sql
  store_timeout_seconds: 2
booking:
  business_name: Glow Studio
  services:
    - {name: Manicure, price: 350}
    - {name: Pedicure, price: "450", is_active: false}
  time_slots: ["09:00 AM"]
whatsapp:
  phone_number_id: 555
  access_token: "${TEST_WA_TOKEN}"
templates:
  strict_instantiation: true
"""


@pytest.fixture(autouse=True)
def _restore_cached_settings(monkeypatch):
    monkeypatch.setattr("config.settings._settings", None)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_DB_DIR", "/var/data")
    monkeypatch.setenv("TEST_WA_TOKEN", "tok-123")
    path = tmp_path / "settings.yaml"
    path.write_text(CONFIG, encoding="utf-8")
    return path


class TestLoadSettings:
    def test_values_and_env_substitution(self, config_file):
        settings = load_settings(str(config_file))
        assert settings.app_name == "TestBot"
        assert settings.database.url == "sqlite:////var/data/bot.db"
        assert settings.database.store_backend == "sql"
        assert settings.database.store_timeout_seconds == 2.0
        assert settings.whatsapp.access_token == "tok-123"
        assert settings.whatsapp.phone_number_id == "555"
        assert settings.templates.strict_instantiation is True

    def test_booking_section(self, config_file):
        booking = load_settings(str(config_file)).booking
        assert booking.business_name == "Glow Studio"
        assert [s.name for s in booking.services] == ["Manicure", "Pedicure"]
        assert booking.services[1].price == 450.0
        assert booking.services[1].is_active is False
        assert booking.time_slots == ["09:00 AM"]
        assert booking.currency == "INR"

    def test_env_var_selects_file(self, config_file, monkeypatch):
        monkeypatch.setenv("CONVERSE_CONFIG", str(config_file))
        assert load_settings().app_name == "TestBot"

    def test_unset_env_var_is_left_in_place(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        path = tmp_path / "s.yaml"
        path.write_text('whatsapp:\n  verify_token: "${NOT_SET_ANYWHERE}"\n', encoding="utf-8")
        assert load_settings(str(path)).whatsapp.verify_token == "${NOT_SET_ANYWHERE}"

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings == Settings()

import yaml
import pytest

from prayer_engine.core.config import DEFAULT_CONFIG, Config
from prayer_engine.prayer.settings import PrayerSettings
from prayer_engine.prayer.types import OffsetSet


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "config.yaml"


class TestConfig:
    def test_creates_default_config(self, config_file):
        config = Config(config_path=str(config_file), watch=False)
        assert config_file.exists()
        assert config.data["prayer"]["convention"] == DEFAULT_CONFIG["prayer"]["convention"]
        assert config.data["api"]["enabled"] is True

    def test_partial_file_merged_with_defaults(self, config_file):
        config_file.write_text(yaml.safe_dump({"prayer": {"convention": "Egyptian"}}))
        config = Config(config_path=str(config_file), watch=False)
        assert config.data["prayer"]["convention"] == "Egyptian"
        assert config.data["prayer"]["sources"] == ["astronomical"]
        assert config.data["notifications"]["language"] == "en"

    def test_env_substitution(self, config_file, monkeypatch):
        monkeypatch.setenv("PRAYER_TEST_LAT", "24.4686")
        config_file.write_text(yaml.safe_dump({"location": {"latitude": "${PRAYER_TEST_LAT}", "longitude": 39.6142}}))
        config = Config(config_path=str(config_file), watch=False)
        assert config.data["location"]["latitude"] == "24.4686"

    def test_env_file_loaded(self, config_file, monkeypatch):
        # setenv first so teardown removes what the .env loader sets
        monkeypatch.setenv("PRAYER_TEST_CITY", "unset")
        monkeypatch.delenv("PRAYER_TEST_CITY")
        (config_file.parent / ".env").write_text("# comment\nPRAYER_TEST_CITY='Medina'\n")
        config_file.write_text(yaml.safe_dump({"location": {"city": "$PRAYER_TEST_CITY"}}))
        config = Config(config_path=str(config_file), watch=False)
        assert config.data["location"]["city"] == "Medina"

    def test_invalid_file_keeps_previous(self, config_file):
        config = Config(config_path=str(config_file), watch=False)
        config_file.write_text("- just\n- a list\n")
        config.reload()
        assert config.data["prayer"]["convention"] == DEFAULT_CONFIG["prayer"]["convention"]

    def test_reload_notifies_callbacks(self, config_file):
        config = Config(config_path=str(config_file), watch=False)
        seen = []
        config.register_change_callback(seen.append)
        config_file.write_text(yaml.safe_dump({"prayer": {"convention": "Karachi"}}))
        config.reload()
        assert seen and seen[0]["prayer"]["convention"] == "Karachi"

    def test_save_round_trips(self, config_file):
        config = Config(config_path=str(config_file), watch=False)
        config.data["prayer"]["offsets"] = {"fajr": 3, "dhuhr": 0, "asr": 0, "maghrib": 0, "isha": 0}
        config.save()
        assert yaml.safe_load(config_file.read_text())["prayer"]["offsets"]["fajr"] == 3


class TestPrayerSettings:
    def test_from_default_config(self):
        settings = PrayerSettings.from_config(DEFAULT_CONFIG)
        assert settings.convention_id == "MuslimWorldLeague"
        assert settings.offsets == OffsetSet()
        assert settings.sources == ("astronomical",)
        assert settings.notifications_enabled is True

    def test_hanafi_asr_selects_variant(self):
        settings = PrayerSettings.from_config({"prayer": {"convention": "Karachi", "asr_method": "Hanafi"}})
        assert settings.convention_id == "Karachi+Hanafi"

    def test_unknown_asr_method_uses_standard(self):
        settings = PrayerSettings.from_config({"prayer": {"convention": "Karachi", "asr_method": "Other"}})
        assert settings.convention_id == "Karachi"

    def test_invalid_offsets_keep_previous(self):
        previous = PrayerSettings(offsets=OffsetSet(fajr=2))
        settings = PrayerSettings.from_config({"prayer": {"offsets": {"fajr": 90}}}, previous=previous)
        assert settings.offsets == OffsetSet(fajr=2)

    def test_single_source_string(self):
        settings = PrayerSettings.from_config({"prayer": {"sources": "aladhan"}})
        assert settings.sources == ("aladhan",)

    def test_location_and_notification_fields(self):
        settings = PrayerSettings.from_config({
            "location": {"timezone": "Asia/Riyadh", "timeout_seconds": 3, "change_threshold_km": 2},
            "notifications": {"enable": False, "language": "ar"},
        })
        assert settings.timezone == "Asia/Riyadh"
        assert settings.location_timeout == 3.0
        assert settings.change_threshold_km == 2.0
        assert settings.notifications_enabled is False
        assert settings.language == "ar"

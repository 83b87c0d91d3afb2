"""Settings loading and validation."""

import pytest
from pydantic import ValidationError

from viking_sync.config import Settings, validate_backend_url


class TestValidateBackendUrl:
    def test_https_trailing_slash_stripped(self):
        assert validate_backend_url("https://api.example.test/") == "https://api.example.test"

    def test_localhost_http_allowed(self):
        assert validate_backend_url("http://localhost:8000") == "http://localhost:8000"

    def test_remote_http_rejected(self):
        assert validate_backend_url("http://api.example.test") is None

    @pytest.mark.parametrize("url", ["", "ftp://api.example.test", "https://"])
    def test_invalid(self, url):
        assert validate_backend_url(url) is None


class TestSettings:
    def test_defaults(self, settings, tmp_path):
        assert settings.request_spacing_ms == 100
        assert settings.max_concurrent_requests == 1
        assert settings.store_backend == "auto"
        assert settings.db_path == tmp_path / "app_store.db"
        assert settings.keyed_store_path == tmp_path / "app_store.json"

    def test_client_id_required_outside_demo(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, api_url="https://api.example.test", data_dir=tmp_path)

    def test_demo_mode_needs_no_client_id(self, demo_settings):
        assert demo_settings.demo_mode is True
        assert demo_settings.oauth_client_id is None

    def test_rejects_plain_http_api(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, api_url="http://api.example.test", oauth_client_id="c")

    def test_store_backend_normalised(self):
        settings = Settings(_env_file=None, api_url="https://api.example.test", oauth_client_id="c", store_backend="SQLite")

        assert settings.store_backend == "sqlite"

    def test_unknown_store_backend(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, api_url="https://api.example.test", oauth_client_id="c", store_backend="redis")

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("API_URL", "https://env.example.test")
        monkeypatch.setenv("OAUTH_CLIENT_ID", "from-env")
        monkeypatch.setenv("REQUEST_SPACING_MS", "250")

        settings = Settings(_env_file=None)

        assert settings.api_url == "https://env.example.test"
        assert settings.oauth_client_id == "from-env"
        assert settings.request_spacing_ms == 250

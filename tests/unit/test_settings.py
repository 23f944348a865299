"""
Unit tests for AutocertSettings and load_settings().
"""
import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from autocert.errors import StorageError
from autocert.settings import AutocertSettings, load_settings


def _settings(**kwargs) -> AutocertSettings:
    values = {"data_dir": "/var/lib/autocert", "common_name": "example.test", "email": "admin@example.test"}
    values.update(kwargs)
    return AutocertSettings(**values)


class TestAutocertSettings:
    """Tests for field defaults and validation."""

    def test_defaults(self):
        settings = _settings()

        assert settings.data_dir == Path("/var/lib/autocert")
        assert settings.server_host is None
        assert settings.server_port == 80
        assert settings.production is False
        assert settings.renew_threshold_days == 14
        assert settings.directory_url is None

    @pytest.mark.parametrize("raw", [
        "Example.Test",
        "  example.test  ",
        "https://example.test/",
        "http://example.test",
    ])
    def test_common_name_is_normalised(self, raw):
        assert _settings(common_name=raw).common_name == "example.test"

    @pytest.mark.parametrize("raw", ["", "   ", "https://"])
    def test_empty_common_name_rejected(self, raw):
        with pytest.raises(ValidationError):
            _settings(common_name=raw)

    def test_email_is_normalised(self):
        assert _settings(email=" Admin@Example.Test ").email == "admin@example.test"

    def test_empty_email_rejected(self):
        with pytest.raises(ValidationError):
            _settings(email=" ")

    @pytest.mark.parametrize("port", [-1, 65536])
    def test_port_out_of_range(self, port):
        with pytest.raises(ValidationError):
            _settings(server_port=port)

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValidationError):
            _settings(renew_threshold_days=-1)

    def test_blank_optionals_become_none(self):
        settings = _settings(server_host="  ", directory_url="")

        assert settings.server_host is None
        assert settings.directory_url is None

    def test_bind_host_defaults_to_common_name(self):
        assert _settings().bind_host == "example.test"

    def test_bind_host_uses_server_host(self):
        assert _settings(server_host="0.0.0.0").bind_host == "0.0.0.0"


class TestLoadSettings:
    """Tests for load_settings()."""

    def _write(self, tmp_path, data) -> Path:
        path = tmp_path / "settings.json"
        path.write_text(json.dumps(data))
        return path

    def test_loads_file(self, tmp_path):
        path = self._write(tmp_path, {
            "data_dir": str(tmp_path / "data"),
            "common_name": "example.test",
            "email": "admin@example.test",
            "server_port": 8080,
            "production": True,
        })

        settings = load_settings(path)

        assert settings.data_dir == tmp_path / "data"
        assert settings.server_port == 8080
        assert settings.production is True

    def test_overrides_replace_file_values(self, tmp_path):
        path = self._write(tmp_path, {
            "data_dir": str(tmp_path / "data"),
            "common_name": "example.test",
            "email": "admin@example.test",
            "server_port": 8080,
        })

        settings = load_settings(path, server_port=8081, email=None)

        assert settings.server_port == 8081
        assert settings.email == "admin@example.test"

    def test_missing_file(self, tmp_path):
        with pytest.raises(StorageError) as exc_info:
            load_settings(tmp_path / "missing.json")

        assert exc_info.value.path == tmp_path / "missing.json"

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json")

        with pytest.raises(StorageError, match="invalid JSON"):
            load_settings(path)

    def test_non_object(self, tmp_path):
        path = self._write(tmp_path, ["example.test"])

        with pytest.raises(StorageError, match="JSON object"):
            load_settings(path)

    def test_missing_required_field(self, tmp_path):
        path = self._write(tmp_path, {"common_name": "example.test"})

        with pytest.raises(ValidationError):
            load_settings(path)

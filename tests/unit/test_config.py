"""Tests for configuration handling."""

import re

import pytest
import yaml

from flightdeck_mcp.config import FlightdeckConfig, Timeouts, generate_deployment_id, load_config

ISSUER_ID = "69a6de70-03db-47e3-e053-5b8c7c11a4d1"


@pytest.mark.unit
class TestFlightdeckConfig:
    """Tests for FlightdeckConfig class."""

    def test_from_config_file(self, tmp_path, api_key_file):
        """Test loading config from a YAML file."""
        config_data = {
            "team_id": "ABCDE12345",
            "credentials_root": str(tmp_path / "apple_info"),
            "p12_password": "shared",
            "data_dir": str(tmp_path / "state"),
            "app_store_connect": {
                "key_id": "ABC123DEFG",
                "issuer_id": ISSUER_ID,
                "key_path": str(api_key_file),
            },
            "timeouts": {"archive": 1200, "unknown": 5},
        }

        config_file = tmp_path / "flightdeck.yaml"
        with open(config_file, "w") as f:
            yaml.dump(config_data, f)

        config = FlightdeckConfig.from_config_file(str(config_file))

        assert config.team_id == "ABCDE12345"
        assert config.team_dir == tmp_path / "apple_info" / "ABCDE12345"
        assert config.api_key_path == api_key_file
        assert config.p12_password == "shared"
        assert config.history_dir == tmp_path / "state" / "deployments"
        assert config.keychain_dir == tmp_path / "state" / "keychains"
        assert config.timeouts.archive == 1200
        assert config.timeouts.export == Timeouts().export
        assert config.has_api_credentials
        assert config.validate() == []

    def test_from_config_file_not_found(self):
        """Test error when config file doesn't exist."""
        with pytest.raises(FileNotFoundError):
            FlightdeckConfig.from_config_file("/nonexistent/path.yaml")

    def test_from_env(self, monkeypatch, clean_env, tmp_path):
        """Test loading config from environment variables."""
        monkeypatch.setenv("FLIGHTDECK_TEAM_ID", "ABCDE12345")
        monkeypatch.setenv("FLIGHTDECK_CREDENTIALS_ROOT", str(tmp_path / "creds"))
        monkeypatch.setenv("FLIGHTDECK_API_KEY_ID", "ABC123DEFG")
        monkeypatch.setenv("FLIGHTDECK_API_ISSUER_ID", ISSUER_ID)
        monkeypatch.setenv("FLIGHTDECK_API_KEY_PATH", str(tmp_path / "AuthKey_ABC123DEFG.p8"))
        monkeypatch.setenv("FLIGHTDECK_P12_PASSWORD", "env-password")

        config = FlightdeckConfig.from_env()

        assert config.team_id == "ABCDE12345"
        assert config.credentials_root == tmp_path / "creds"
        assert config.api_key_id == "ABC123DEFG"
        assert config.p12_password == "env-password"

    def test_default_data_dir_follows_xdg(self, clean_env, tmp_path):
        """Test the data directory defaults under XDG_DATA_HOME."""
        config = FlightdeckConfig(team_id="ABCDE12345")
        assert config.data_dir == tmp_path / "data" / "flightdeck-mcp"

    def test_validate_invalid_team(self):
        """Test validation fails with a malformed team ID."""
        errors = FlightdeckConfig(team_id="bad").validate()
        assert len(errors) == 1
        assert "Invalid team ID" in errors[0]

    def test_validate_incomplete_credentials(self, tmp_path):
        """Test validation fails when only some API settings are present."""
        config = FlightdeckConfig(team_id="ABCDE12345", api_key_id="ABC123DEFG")

        errors = config.validate()

        assert not config.has_api_credentials
        assert any("incomplete" in e for e in errors)

    def test_validate_missing_key_file(self, tmp_path):
        """Test validation reports a missing AuthKey file."""
        config = FlightdeckConfig(
            team_id="ABCDE12345",
            api_key_id="ABC123DEFG",
            api_issuer_id=ISSUER_ID,
            api_key_path=tmp_path / "missing.p8",
        )

        assert any("not found" in e for e in config.validate())

    def test_with_team(self):
        """Test copying the config for another team."""
        config = FlightdeckConfig(team_id="ABCDE12345", p12_password="x")

        other = config.with_team("ZYXWV98765")

        assert other.team_id == "ZYXWV98765"
        assert other.p12_password == "x"
        assert config.team_id == "ABCDE12345"


@pytest.mark.unit
class TestLoadConfig:
    """Tests for load_config function."""

    def test_load_from_env_config_path(self, tmp_path, monkeypatch, clean_env):
        """Test loading from FLIGHTDECK_CONFIG_PATH."""
        config_file = tmp_path / "flightdeck.yaml"
        config_file.write_text(yaml.dump({"team_id": "ABCDE12345"}))
        monkeypatch.setenv("FLIGHTDECK_CONFIG_PATH", str(config_file))
        monkeypatch.setenv("FLIGHTDECK_TEAM_ID", "ZYXWV98765")

        config = load_config()

        assert config.team_id == "ABCDE12345"

    def test_team_argument_overrides(self, monkeypatch, clean_env):
        """Test the team_id argument overrides the environment."""
        monkeypatch.setenv("FLIGHTDECK_TEAM_ID", "ABCDE12345")
        assert load_config("ZYXWV98765").team_id == "ZYXWV98765"

    def test_team_argument_alone_is_enough(self, clean_env):
        """Test a team_id argument works without any environment."""
        assert load_config("ABCDE12345").team_id == "ABCDE12345"

    def test_load_no_config_raises(self, clean_env):
        """Test error when no configuration is available."""
        with pytest.raises(ValueError) as exc_info:
            load_config()
        assert "FLIGHTDECK_CONFIG_PATH" in str(exc_info.value)


@pytest.mark.unit
def test_generate_deployment_id():
    """Test deployment ID format."""
    deployment_id = generate_deployment_id("ABCDE12345", "com.company.myapp")

    assert re.match(r"^DEPLOY_ABCDE12345_MYAP_\d{8}_\d{6}_[0-9A-F]{6}$", deployment_id)
    assert deployment_id != generate_deployment_id("ABCDE12345", "com.company.myapp")

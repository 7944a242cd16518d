from pathlib import Path
import sys

import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from xraysync.config import DEFAULT_BUCKET_SIZE, Settings, XrayConfig, create_default_config, load_config

ENV_KEYS = [
    "JIRA_SERVER_URL", "JIRA_USERNAME", "JIRA_API_TOKEN", "JIRA_PROJECT", "JIRA_CA_CERT_PATH", "JIRA_TIMEOUT",
    "XRAY_CLOUD_URL", "XRAY_BUCKET_SIZE", "XRAY_RETRY_FACTOR", "DEBUG", "LOG_LEVEL",
]


def clear_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_yaml_values_are_loaded(tmp_path, monkeypatch):
    clear_env(monkeypatch)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump({
        "jira": {"server_url": "https://jira.test", "project": "XT"},
        "xray": {"bucket_size": 4, "plan_type": "Plan"},
    }), encoding="utf-8")

    settings = load_config(str(config_path))

    assert settings.jira.server_url == "https://jira.test"
    assert settings.jira.project == "XT"
    assert settings.xray.bucket_size == 4
    assert settings.xray.plan_type == "Plan"
    assert settings.xray.retry_factor == 5


def test_environment_overrides_file(tmp_path, monkeypatch):
    clear_env(monkeypatch)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump({"jira": {"project": "XT"}, "xray": {"bucket_size": 4}}), encoding="utf-8")
    monkeypatch.setenv("JIRA_PROJECT", "OPS")
    monkeypatch.setenv("XRAY_BUCKET_SIZE", "8")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env_and_file(str(config_path))

    assert settings.jira.project == "OPS"
    assert settings.xray.bucket_size == 8
    assert settings.app.log_level == "DEBUG"


def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    clear_env(monkeypatch)
    settings = load_config(str(tmp_path / "missing.yaml"))
    assert settings.xray.cloud_url == "https://xray.cloud.xpand-it.com"
    assert settings.jira.timeout == 30


def test_invalid_bucket_size_falls_back_to_default():
    assert XrayConfig(bucket_size=0).effective_bucket_size() == DEFAULT_BUCKET_SIZE
    assert XrayConfig(bucket_size=-3).effective_bucket_size() == DEFAULT_BUCKET_SIZE
    assert XrayConfig(bucket_size=2).effective_bucket_size() == 2


def test_create_default_config_round_trips(tmp_path, monkeypatch):
    clear_env(monkeypatch)
    config_path = tmp_path / "config.yaml"
    create_default_config(str(config_path))

    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert data["xray"]["bucket_size"] == DEFAULT_BUCKET_SIZE
    assert load_config(str(config_path)).xray.schemas.test_sets.endswith("test-sets-custom-field")

"""Tests for provision.yaml loading and validation."""

from datetime import datetime
from pathlib import Path

import pytest
import yaml

from provorch.config import (
    ConfigError,
    ProvisionConfig,
    default_config,
    get_default_config_path,
    get_provorch_home,
    load_config,
)
from provorch.probe import HttpProbe, ProcessProbe, TcpProbe
from provorch.retry import Backoff


@pytest.fixture
def write_config(tmp_path):
    def _write(data, name="provision.yaml"):
        path = tmp_path / name
        path.write_text(data if isinstance(data, str) else yaml.safe_dump(data))
        return path
    return _write


class TestLoading:
    def test_load_from_file(self, write_config, provision_data):
        config = load_config(write_config(provision_data))

        assert config.name == "test-stack"
        assert config.version == "1.2.3"
        assert [s.name for s in config.stages] == ["packages", "models", "inference", "firewall"]
        assert [s.name for s in config.services] == ["daemon", "proxy"]
        config.validate()

    def test_default_path_uses_home(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROVORCH_HOME", str(tmp_path / "ph"))
        assert get_provorch_home() == tmp_path / "ph"
        assert get_default_config_path() == tmp_path / "ph" / "provision.yaml"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_empty_file(self, write_config):
        with pytest.raises(ConfigError, match="empty"):
            load_config(write_config(""))

    def test_invalid_yaml(self, write_config):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(write_config("stages: [unclosed"))

    def test_root_must_be_mapping(self, write_config):
        with pytest.raises(ConfigError, match="mapping"):
            load_config(write_config("- just\n- a list\n"))

    def test_sample_config_file_is_valid(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROVORCH_HOME", str(tmp_path))
        sample = Path(__file__).parent.parent / "config" / "provision.yaml"
        config = load_config(sample)
        config.validate()
        assert config.get_stage("firewall").enabled is False


class TestStageSettings:
    def test_defaults(self, provision_config):
        packages = provision_config.get_stage("packages")
        assert packages.enabled
        assert packages.critical
        assert packages.requires == ()

    def test_network_stages_are_optional_by_default(self, provision_config):
        assert not provision_config.get_stage("firewall").critical

    def test_extra_keys(self):
        config = ProvisionConfig.from_dict({
            "stages": [{"name": "tools", "type": "packages", "packages": ["jq"], "requires": []}],
        })
        assert config.get_stage("tools").get("packages") == ["jq"]
        assert config.get_stage("tools").get("missing", "x") == "x"

    def test_enabled_stages_keep_order(self):
        config = ProvisionConfig.from_dict({"stages": [
            {"name": "a", "type": "packages"},
            {"name": "b", "type": "firewall", "enabled": False},
            {"name": "c", "type": "models"},
        ]})
        assert [s.name for s in config.get_enabled_stages()] == ["a", "c"]


class TestServiceConfig:
    def test_probe_targets(self, provision_config):
        assert provision_config.get_service("daemon").probe_target() == TcpProbe("127.0.0.1", 11434)
        assert provision_config.get_service("proxy").probe_target() == HttpProbe("http://127.0.0.1:4000/health")

    def test_process_probe(self):
        config = ProvisionConfig.from_dict({"services": [{"name": "d", "probe": {"process": "ollama"}}]})
        assert config.get_service("d").probe_target() == ProcessProbe("ollama")

    def test_tcp_without_host(self):
        config = ProvisionConfig.from_dict({"services": [{"name": "d", "probe": {"tcp": ":8080"}}]})
        assert config.get_service("d").probe_target() == TcpProbe("127.0.0.1", 8080)

    def test_missing_probe(self):
        config = ProvisionConfig.from_dict({"services": [{"name": "d"}]})
        with pytest.raises(ConfigError, match="probe"):
            config.get_service("d").probe_target()

    def test_log_path_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROVORCH_HOME", str(tmp_path))
        config = ProvisionConfig.from_dict({"services": [
            {"name": "d", "probe": {"tcp": ":1"}, "log": "{home}/logs/ollama-{date}.log"},
        ]})
        today = datetime.now().strftime("%Y-%m-%d")
        assert config.get_service("d").log == f"{tmp_path}/logs/ollama-{today}.log"

    def test_service_retry_inherits_defaults(self, provision_config):
        service = ProvisionConfig.from_dict({"services": [
            {"name": "d", "probe": {"tcp": ":1"}, "retry": {"backoff": "exponential"}},
        ]}).get_service("d")
        policy = service.retry_policy(provision_config.get_retry_policy())
        assert policy.backoff == Backoff.EXPONENTIAL
        assert policy.max_attempts == 3

    def test_no_service_retry(self, provision_config):
        assert provision_config.get_service("daemon").retry_policy(provision_config.get_retry_policy()) is None


class TestGetters:
    def test_retry_policy(self, provision_config):
        policy = provision_config.get_retry_policy()
        assert policy.max_attempts == 3
        assert policy.base_delay == 0.01

    def test_invalid_retry_policy(self):
        with pytest.raises(ConfigError, match="retry"):
            ProvisionConfig.from_dict({"retry": {"max_attempts": 0}}).get_retry_policy()

    def test_packages_and_models(self, provision_config):
        assert provision_config.get_package_names() == ["ollama", "docker"]
        assert provision_config.get_package_specs()[1].binary == "docker"
        assert provision_config.get_required_models() == ["llama3"]
        assert provision_config.get_model_base_url() == "http://127.0.0.1:11434"

    def test_allowed_ports(self, provision_config):
        assert provision_config.get_allowed_ports() == [4000, 11434]

    def test_explicit_allowed_ports(self):
        config = ProvisionConfig.from_dict({"firewall": {"allowed_ports": [8080, 22, 8080]}})
        assert config.get_allowed_ports() == [22, 8080]

    def test_log_paths(self, provision_config, tmp_path):
        assert provision_config.get_log_file_path() == tmp_path / "logs" / "provorch.log"
        assert provision_config.get_state_file_path() == tmp_path / "logs" / "state.json"

    def test_default_log_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROVORCH_HOME", str(tmp_path))
        config = ProvisionConfig.from_dict({})
        today = datetime.now().strftime("%Y-%m-%d")
        assert config.get_log_file_path() == tmp_path / "logs" / f"provorch-{today}.log"
        assert config.get_log_level() == "INFO"
        assert config.get_log_format() == "structured"
        assert config.should_log_to_console()

    def test_behaviour(self, provision_config):
        assert provision_config.get_probe_timeout() == 0.5
        assert not provision_config.should_stop_services_on_cancel()


class TestValidation:
    def mutate(self, provision_data, **changes):
        data = dict(provision_data)
        data.update(changes)
        return ProvisionConfig.from_dict(data)

    def test_no_enabled_stages(self, provision_data):
        config = self.mutate(provision_data, stages=[{"name": "a", "type": "packages", "enabled": False}])
        with pytest.raises(ConfigError, match="No enabled stages"):
            config.validate()

    def test_duplicate_stage(self, provision_data):
        config = self.mutate(provision_data, stages=[
            {"name": "a", "type": "packages"}, {"name": "a", "type": "models"},
        ])
        with pytest.raises(ConfigError, match="Duplicate stage"):
            config.validate()

    def test_stage_without_type(self, provision_data):
        config = self.mutate(provision_data, stages=[{"name": "a"}])
        with pytest.raises(ConfigError, match="type"):
            config.validate()

    def test_duplicate_service(self, provision_data):
        service = {"name": "d", "probe": {"tcp": ":1"}}
        config = self.mutate(provision_data, services=[service, service])
        with pytest.raises(ConfigError, match="Duplicate service"):
            config.validate()

    def test_unknown_dependency(self, provision_data):
        config = self.mutate(provision_data, services=[
            {"name": "proxy", "probe": {"tcp": ":1"}, "depends_on": ["ghost"]},
        ])
        with pytest.raises(ConfigError, match="unknown services"):
            config.validate()

    def test_self_dependency(self, provision_data):
        config = self.mutate(provision_data, services=[
            {"name": "proxy", "probe": {"tcp": ":1"}, "depends_on": ["proxy"]},
        ])
        with pytest.raises(ConfigError, match="itself"):
            config.validate()

    def test_command_and_container(self, provision_data):
        config = self.mutate(provision_data, services=[
            {"name": "d", "probe": {"tcp": ":1"}, "command": ["x"], "container": {"image": "y"}},
        ])
        with pytest.raises(ConfigError, match="not both"):
            config.validate()

    def test_container_without_image(self, provision_data):
        config = self.mutate(provision_data, services=[{"name": "d", "probe": {"tcp": ":1"}, "container": {"ports": {4000: 4000}}}])
        with pytest.raises(ConfigError):
            config.validate()

    def test_bad_probe_timeout(self, provision_data):
        config = self.mutate(provision_data, probe={"timeout": 0})
        with pytest.raises(ConfigError, match="probe.timeout"):
            config.validate()

    def test_bad_service_retry(self, provision_data):
        config = self.mutate(provision_data, services=[
            {"name": "d", "probe": {"tcp": ":1"}, "retry": {"base_delay": -1}},
        ])
        with pytest.raises(ConfigError, match="invalid retry"):
            config.validate()

    def test_models_must_be_list(self, provision_data):
        config = self.mutate(provision_data, models={"required": "llama3"})
        with pytest.raises(ConfigError, match="list"):
            config.validate()


def test_default_config_is_valid(tmp_path, monkeypatch):
    monkeypatch.setenv("PROVORCH_HOME", str(tmp_path))
    config = ProvisionConfig.from_dict(default_config())
    config.validate()
    assert config.name == "local-inference"
    assert config.get_service("translation-proxy").depends_on == {"model-daemon"}
    assert config.get_allowed_ports() == [4000, 11434]

import pytest

from provorch.cancellation import CancellationToken
from provorch.collaborators import Collaborators
from provorch.config import ProvisionConfig
from provorch.pipeline import RunContext
from provorch.probe import ProbeClient
from provorch.retry import RetryPolicy
from provorch.supervisor import ServiceSupervisor


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=5, base_delay=0.01, max_total_wait=2.0)


@pytest.fixture
def cancel():
    return CancellationToken()


@pytest.fixture
def supervisor(fast_retry, cancel):
    return ServiceSupervisor(ProbeClient(default_timeout=1.0), retry=fast_retry, cancel=cancel)


@pytest.fixture
def make_context(supervisor, cancel):
    """Build a RunContext around the shared supervisor."""

    def _make(config=None, collaborators=None):
        return RunContext(
            config=config,
            supervisor=supervisor,
            probe_client=supervisor.probe_client,
            cancel=cancel,
            collaborators=collaborators or Collaborators(),
        )

    return _make


@pytest.fixture
def provision_data(tmp_path):
    """A minimal but complete configuration using NoOp-friendly values."""
    return {
        "pipeline": {"name": "test-stack", "version": "1.2.3"},
        "logging": {"output": str(tmp_path / "logs" / "provorch.log"), "console": False},
        "retry": {"max_attempts": 3, "base_delay": 0.01, "max_total_wait": 1.0},
        "probe": {"timeout": 0.5},
        "packages": {"items": ["ollama", {"name": "docker", "binary": "docker"}]},
        "services": [
            {"name": "daemon", "probe": {"tcp": "127.0.0.1:11434"}, "port": 11434},
            {"name": "proxy", "probe": {"http": "http://127.0.0.1:4000/health"},
             "depends_on": ["daemon"], "port": 4000},
        ],
        "models": {"required": ["llama3"]},
        "inference": {"model": "llama3"},
        "offline_check": {"endpoints": ["http://example.invalid"]},
        "stages": [
            {"name": "packages", "type": "packages"},
            {"name": "models", "type": "models"},
            {"name": "inference", "type": "inference"},
            {"name": "firewall", "type": "firewall"},
        ],
    }


@pytest.fixture
def provision_config(provision_data, tmp_path, monkeypatch):
    monkeypatch.setenv("PROVORCH_HOME", str(tmp_path / "home"))
    return ProvisionConfig.from_dict(provision_data)

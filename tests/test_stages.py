"""Tests for the built-in provisioning stages and build_pipeline()."""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from provorch.collaborators import (
    Collaborators,
    CollaboratorResult,
    NoOpContainerRuntime,
    NoOpFirewallConfigurator,
    NoOpModelService,
)
from provorch.config import ProvisionConfig, default_config
from provorch.errors import ConfigError, ErrorKind, PipelineConstructionError
from provorch.schemas import ServiceState, StageStatus
from provorch.stages import StageRegistry, build_pipeline

from helpers import RecordingInstaller, free_port


def config_with(stages, **sections):
    data = {"pipeline": {"name": "stages-test"}, "stages": stages}
    data.update(sections)
    return ProvisionConfig.from_dict(data)


async def run_pipeline(config, ctx_factory, collaborators):
    pipeline = build_pipeline(config)
    return await pipeline.execute(ctx_factory(config=config, collaborators=collaborators))


class FlakyRuntime(NoOpContainerRuntime):
    def __init__(self, available_after=0):
        self.checks = 0
        self.available_after = available_after
        self.ensured = []

    def is_available(self):
        self.checks += 1
        return self.checks > self.available_after

    def ensure_container_running(self, spec):
        self.ensured.append(spec)
        return CollaboratorResult.changed(f"{spec.name} started")


class BrokenModelService(NoOpModelService):
    async def pull(self, model):
        return CollaboratorResult.failed(f"pull {model}: manifest unknown")


@pytest_asyncio.fixture
async def reachable_url():
    async def hello(request):
        return web.Response(text="hello")

    app = web.Application()
    app.router.add_route("*", "/", hello)
    server = TestServer(app, host="127.0.0.1")
    async with server:
        yield str(server.make_url("/"))


class TestPackagesStage:
    @pytest.mark.asyncio
    async def test_installs_missing_packages_in_order(self, make_context):
        installer = RecordingInstaller(installed={"ollama"})
        config = config_with(
            [{"name": "packages", "type": "packages"}],
            packages={"items": ["ollama", "colima", "docker"]},
        )

        execution = await run_pipeline(config, make_context, Collaborators(installer=installer))

        (outcome,) = execution.outcomes
        assert outcome.succeeded
        assert installer.calls == ["ollama", "colima", "docker"]
        assert outcome.diagnostics[-1].message == "3 package(s) present, 2 newly installed"

    @pytest.mark.asyncio
    async def test_rerun_changes_nothing(self, make_context):
        installer = RecordingInstaller()
        config = config_with([{"name": "packages", "type": "packages"}], packages={"items": ["ollama"]})

        await run_pipeline(config, make_context, Collaborators(installer=installer))
        execution = await run_pipeline(config, make_context, Collaborators(installer=installer))

        assert execution.outcomes[0].diagnostics[-1].message == "1 package(s) present, 0 newly installed"

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self, make_context):
        installer = RecordingInstaller(broken={"colima"})
        config = config_with(
            [{"name": "packages", "type": "packages"}, {"name": "models", "type": "models"}],
            packages={"items": ["ollama", "colima", "docker"]},
            models={"required": ["llama3"]},
        )

        execution = await run_pipeline(config, make_context, Collaborators(installer=installer))

        assert installer.calls == ["ollama", "colima"]
        assert len(execution.outcomes) == 1
        outcome = execution.outcomes[0]
        assert outcome.failed
        assert outcome.error.message == "Installing colima failed"
        assert outcome.error.details["package"] == "colima"

    @pytest.mark.asyncio
    async def test_missing_installer_fails_stage(self, make_context):
        config = config_with([{"name": "packages", "type": "packages"}], packages={"items": ["ollama"]})
        execution = await run_pipeline(config, make_context, Collaborators())
        assert execution.outcomes[0].error.message == "No package installer configured"

    def test_no_packages_is_config_error(self):
        with pytest.raises(ConfigError):
            build_pipeline(config_with([{"name": "packages", "type": "packages"}]))

    def test_stage_level_package_list(self):
        config = config_with([{"name": "tools", "type": "packages", "packages": ["jq"]}])
        assert build_pipeline(config).get_stage("tools") is not None


class TestContainerRuntimeStage:
    @pytest.mark.asyncio
    async def test_available_runtime(self, make_context, supervisor):
        config = config_with([{"name": "runtime", "type": "container_runtime"}])

        execution = await run_pipeline(config, make_context, Collaborators(runtime=NoOpContainerRuntime()))

        assert execution.outcomes[0].succeeded
        assert supervisor.get("container-runtime").state == ServiceState.HEALTHY

    @pytest.mark.asyncio
    async def test_waits_for_runtime(self, make_context, supervisor):
        runtime = FlakyRuntime(available_after=2)
        config = config_with(
            [{"name": "runtime", "type": "container_runtime"}],
            container_runtime={"retry": {"max_attempts": 5, "base_delay": 0.01}},
        )

        execution = await run_pipeline(config, make_context, Collaborators(runtime=runtime))

        assert execution.outcomes[0].succeeded
        assert supervisor.get("container-runtime").attempts == 3

    @pytest.mark.asyncio
    async def test_unavailable_runtime_fails(self, make_context, supervisor):
        runtime = FlakyRuntime(available_after=100)
        config = config_with(
            [{"name": "runtime", "type": "container_runtime"}],
            container_runtime={"retry": {"max_attempts": 2, "base_delay": 0.01}},
        )

        execution = await run_pipeline(config, make_context, Collaborators(runtime=runtime))

        outcome = execution.outcomes[0]
        assert outcome.failed
        assert outcome.error.kind == ErrorKind.STAGE_ACTION
        assert "container-runtime" in outcome.error.details


class TestServicesStage:
    @pytest.mark.asyncio
    async def test_externally_managed_service_becomes_healthy(self, make_context, supervisor):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        config = config_with(
            [{"name": "services", "type": "services"}],
            services=[{"name": "daemon", "probe": {"tcp": f"127.0.0.1:{port}"}}],
        )
        try:
            execution = await run_pipeline(config, make_context, Collaborators())
        finally:
            server.close()
            await server.wait_closed()

        outcome = execution.outcomes[0]
        assert outcome.succeeded
        assert supervisor.get("daemon").healthy
        assert outcome.diagnostics[-1].message == "daemon: healthy after 1 probe(s)"

    @pytest.mark.asyncio
    async def test_unhealthy_service_fails_and_skips_dependent(self, make_context, supervisor):
        config = config_with(
            [{"name": "services", "type": "services"}],
            services=[
                {"name": "daemon", "probe": {"tcp": f"127.0.0.1:{free_port()}"},
                 "retry": {"max_attempts": 2, "base_delay": 0.01}},
                {"name": "proxy", "probe": {"tcp": f"127.0.0.1:{free_port()}"}, "depends_on": ["daemon"]},
            ],
        )

        execution = await run_pipeline(config, make_context, Collaborators())

        outcome = execution.outcomes[0]
        assert outcome.failed
        assert outcome.error.message.startswith("Required services not healthy")
        assert set(outcome.error.details["services"]) == {"daemon", "proxy"}
        assert supervisor.get("daemon").error.kind == ErrorKind.PROBE_UNREACHABLE
        assert supervisor.get("proxy").state == ServiceState.SKIPPED

    @pytest.mark.asyncio
    async def test_container_service_uses_runtime(self, make_context, supervisor):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        runtime = FlakyRuntime()
        config = config_with(
            [{"name": "services", "type": "services"}],
            services=[{
                "name": "proxy",
                "container": {"image": "litellm:stable", "ports": {port: 4000}},
                "probe": {"tcp": f"127.0.0.1:{port}"},
            }],
        )
        try:
            execution = await run_pipeline(config, make_context, Collaborators(runtime=runtime))
        finally:
            server.close()
            await server.wait_closed()

        assert execution.outcomes[0].succeeded
        (spec,) = runtime.ensured
        assert spec.name == "proxy"
        assert spec.image == "litellm:stable"
        assert spec.ports == {port: 4000}

    @pytest.mark.asyncio
    async def test_only_selected_services_and_dependencies_are_registered(self, make_context, supervisor):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        config = config_with(
            [{"name": "services", "type": "services", "services": ["proxy"]}],
            services=[
                {"name": "daemon", "probe": {"tcp": f"127.0.0.1:{port}"}},
                {"name": "proxy", "probe": {"tcp": f"127.0.0.1:{port}"}, "depends_on": ["daemon"]},
                {"name": "webui", "container": {"image": "open-webui:main"}, "probe": {"tcp": "127.0.0.1:1"}},
            ],
        )
        try:
            # No container runtime: webui is outside the selection and must not need one
            execution = await run_pipeline(config, make_context, Collaborators())
        finally:
            server.close()
            await server.wait_closed()

        assert execution.outcomes[0].succeeded
        assert supervisor.get("daemon").healthy
        assert supervisor.get("proxy").healthy
        assert supervisor.get("webui") is None

    def test_unknown_selected_service(self):
        config = config_with(
            [{"name": "services", "type": "services", "services": ["ghost"]}],
            services=[{"name": "daemon", "probe": {"tcp": "127.0.0.1:1"}}],
        )
        with pytest.raises(ConfigError, match="unknown services"):
            build_pipeline(config)


class TestModelStages:
    @pytest.mark.asyncio
    async def test_present_models_are_not_pulled(self, make_context):
        service = NoOpModelService(models={"llama3:latest"})
        config = config_with([{"name": "models", "type": "models"}], models={"required": ["llama3"]})

        execution = await run_pipeline(config, make_context, Collaborators(model_service=service))

        outcome = execution.outcomes[0]
        assert outcome.succeeded
        assert outcome.diagnostics[0].message == "models: already satisfied"

    @pytest.mark.asyncio
    async def test_missing_models_are_pulled(self, make_context):
        service = NoOpModelService(models={"llama3"})
        config = config_with(
            [{"name": "models", "type": "models"}], models={"required": ["llama3", "qwen2.5:7b"]}
        )

        execution = await run_pipeline(config, make_context, Collaborators(model_service=service))

        assert execution.outcomes[0].succeeded
        assert "qwen2.5:7b" in service.models
        messages = [d.message for d in execution.outcomes[0].diagnostics]
        assert "llama3: already present" in messages
        assert any(m.startswith("qwen2.5:7b: changed") for m in messages)

    @pytest.mark.asyncio
    async def test_failed_pull(self, make_context):
        config = config_with([{"name": "models", "type": "models"}], models={"required": ["llama3"]})
        execution = await run_pipeline(config, make_context, Collaborators(model_service=BrokenModelService()))
        outcome = execution.outcomes[0]
        assert outcome.failed
        assert outcome.error.details["model"] == "llama3"

    @pytest.mark.asyncio
    async def test_inference_answers(self, make_context):
        service = NoOpModelService(response=" ready\n")
        config = config_with(
            [{"name": "inference", "type": "inference"}], inference={"model": "llama3", "expect": "READY"}
        )

        execution = await run_pipeline(config, make_context, Collaborators(model_service=service))

        outcome = execution.outcomes[0]
        assert outcome.succeeded
        assert outcome.diagnostics[-1].message == "llama3 answered: ready"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response, inference", [
        ("   ", {"model": "llama3"}),
        ("I cannot help", {"model": "llama3", "expect": "ready"}),
    ])
    async def test_inference_rejects_bad_answers(self, make_context, response, inference):
        config = config_with([{"name": "inference", "type": "inference"}], inference=inference)
        execution = await run_pipeline(
            config, make_context, Collaborators(model_service=NoOpModelService(response=response))
        )
        assert execution.outcomes[0].failed

    def test_inference_model_falls_back_to_required_models(self):
        config = config_with([{"name": "inference", "type": "inference"}], models={"required": ["llama3"]})
        assert len(build_pipeline(config)) == 1

    def test_inference_without_model(self):
        with pytest.raises(ConfigError):
            build_pipeline(config_with([{"name": "inference", "type": "inference"}]))


class TestNetworkStages:
    @pytest.mark.asyncio
    async def test_firewall_applies_rules(self, make_context):
        config = config_with(
            [{"name": "firewall", "type": "firewall"}],
            services=[{"name": "daemon", "probe": {"tcp": "127.0.0.1:11434"}, "port": 11434}],
        )
        execution = await run_pipeline(
            config, make_context, Collaborators(firewall=NoOpFirewallConfigurator())
        )
        outcome = execution.outcomes[0]
        assert outcome.succeeded
        assert not outcome.critical
        assert "[11434]" in outcome.diagnostics[0].message

    @pytest.mark.asyncio
    async def test_firewall_failure_does_not_halt(self, make_context):
        service = NoOpModelService(response="ready")
        config = config_with(
            [{"name": "firewall", "type": "firewall"}, {"name": "inference", "type": "inference"}],
            inference={"model": "llama3"},
        )

        execution = await run_pipeline(config, make_context, Collaborators(model_service=service))

        assert [o.status for o in execution.outcomes] == [StageStatus.FAILED, StageStatus.SUCCEEDED]
        assert execution.outcomes[0].error.message == "No firewall configurator configured"

    @pytest.mark.asyncio
    async def test_offline_check_passes_when_blocked(self, make_context):
        config = config_with(
            [{"name": "offline", "type": "offline_check"}],
            offline_check={"endpoints": [f"http://127.0.0.1:{free_port()}/"], "timeout": 1.0},
        )
        execution = await run_pipeline(config, make_context, Collaborators())
        outcome = execution.outcomes[0]
        assert outcome.succeeded
        assert "blocked" in outcome.diagnostics[0].message

    @pytest.mark.asyncio
    async def test_offline_check_reports_leak(self, make_context, reachable_url):
        config = config_with(
            [{"name": "offline", "type": "offline_check"}],
            offline_check={"endpoints": [reachable_url], "timeout": 1.0},
        )
        execution = await run_pipeline(config, make_context, Collaborators())
        outcome = execution.outcomes[0]
        assert outcome.failed
        assert outcome.error.details["endpoints"] == [reachable_url]

    def test_offline_check_needs_endpoints(self):
        with pytest.raises(ConfigError):
            build_pipeline(config_with([{"name": "offline", "type": "offline_check"}]))


class TestBuildPipeline:
    def test_default_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROVORCH_HOME", str(tmp_path))
        pipeline = build_pipeline(ProvisionConfig.from_dict(default_config()))

        assert [s.name for s in pipeline] == [
            "packages", "container-runtime", "services", "models", "inference", "offline-check",
        ]
        assert pipeline.name == "local-inference"
        assert not pipeline.get_stage("offline-check").critical
        assert all(s.critical for s in pipeline if s.name != "offline-check")

    def test_unknown_stage_type(self):
        with pytest.raises(PipelineConstructionError, match="Unknown stage type"):
            build_pipeline(config_with([{"name": "x", "type": "teleport"}]))

    def test_requires_disabled_stage(self):
        config = config_with(
            [
                {"name": "firewall", "type": "firewall", "enabled": False},
                {"name": "offline", "type": "offline_check", "requires": ["firewall"]},
            ],
            offline_check={"endpoints": ["http://example.com"]},
        )
        with pytest.raises(PipelineConstructionError, match="disabled stage firewall"):
            build_pipeline(config)

    def test_critical_override(self):
        config = config_with([{"name": "firewall", "type": "firewall", "critical": True}])
        assert build_pipeline(config).get_stage("firewall").critical

    def test_custom_registry(self):
        registry = StageRegistry.create_default()
        assert registry.has("packages")
        assert "offline_check" in registry.list_types()
        with pytest.raises(PipelineConstructionError):
            registry.get("teleport")

"""
Test cases for PipelineOrchestrator.
Covers the run state machine, fan-out isolation, aggregation and cancellation.
"""

import asyncio
import errno
from unittest.mock import AsyncMock, Mock, patch

import pytest

from monobuild.build.cache import LayerCache
from monobuild.build.change_detector import ChangeDetector
from monobuild.build.descriptor import BuildDescriptorResolver
from monobuild.build.image_builder import ImageBuilder
from monobuild.config.global_config_loader import GlobalConfig
from monobuild.config.path_registry import PathRegistry
from monobuild.core.enums import FailureKind, FailurePolicy, RunState, RunStatus
from monobuild.core.errors import HistoryUnavailable
from monobuild.core.models import ChangeSet, ServiceDescriptor
from monobuild.orchestrator import PipelineOrchestrator
from monobuild.publish.publisher import Publisher
from monobuild.publish.registry_client import RegistryClient

from .conftest import BASE_SHA, HEAD_SHA


CREDENTIALS = {'username': 'shopuser', 'password': 'secret'}


@pytest.fixture
def change_detector():
    detector = Mock(spec=ChangeDetector)
    detector.commit_timestamp.return_value = 1700000000
    return detector


@pytest.fixture
def registry_client():
    client = Mock(spec=RegistryClient)
    client.get_config_digest = AsyncMock(return_value=None)
    return client


@pytest.fixture
def layer_cache(tmp_path) -> LayerCache:
    return LayerCache(tmp_path / "cache")


@pytest.fixture
def make_orchestrator(path_registry, change_detector, registry_client, layer_cache, monorepo, fake_runner):
    """Factory wiring real components around a fake docker and a mocked detector"""

    def factory(**kwargs) -> PipelineOrchestrator:
        kwargs.setdefault('credentials', dict(CREDENTIALS))
        return PipelineOrchestrator(
            registry=kwargs.pop('registry', path_registry),
            change_detector=change_detector,
            resolver=BuildDescriptorResolver(monorepo),
            image_builder=ImageBuilder("shopuser", runner=fake_runner),
            publisher=Publisher(registry_client, runner=fake_runner, backoff=0),
            layer_cache=layer_cache,
            **kwargs
        )

    return factory


def changes(*paths) -> ChangeSet:
    return ChangeSet(base=BASE_SHA, head=HEAD_SHA, changed_paths=frozenset(paths))


class TestRunScenarios:
    """End-to-end runs with docker faked"""

    @pytest.mark.asyncio
    async def test_single_service_change(self, make_orchestrator, change_detector, fake_runner):
        change_detector.detect.return_value = changes("src/frontend/static/x.css")

        report = await make_orchestrator().run(BASE_SHA, HEAD_SHA)

        assert report.matrix.names() == ["frontend"]
        assert report.status == RunStatus.SUCCESS
        assert report.exit_code == 0
        assert fake_runner.pushed() == ["shopuser/frontend:4f2a9c1", "shopuser/frontend:latest"]
        assert report.transitions == [
            "detecting", "matrix_computed", "fanning_out", "aggregating", "done"
        ]

    @pytest.mark.asyncio
    async def test_two_services_in_registry_order(self, make_orchestrator, change_detector, fake_runner):
        change_detector.detect.return_value = changes(
            "src/paymentservice/server.js", "README.md", "src/cartservice/main.go"
        )

        report = await make_orchestrator().run(BASE_SHA, HEAD_SHA)

        assert report.matrix.names() == ["cartservice", "paymentservice"]
        assert [r.service.name for r in report.results] == ["cartservice", "paymentservice"]
        assert report.status == RunStatus.SUCCESS
        cart_build = next(c for c in fake_runner.commands("buildx") if "shopuser/cartservice:latest" in c)
        assert cart_build[-1].endswith("src/cartservice/src")

    @pytest.mark.asyncio
    async def test_no_watched_change_skips_fan_out(self, make_orchestrator, change_detector, fake_runner):
        change_detector.detect.return_value = changes("README.md", "release/manifests.yaml")
        orchestrator = make_orchestrator(credentials={})

        report = await orchestrator.run(BASE_SHA, HEAD_SHA)

        assert report.status == RunStatus.SUCCESS
        assert report.skipped
        assert report.results == []
        assert "fanning_out" not in report.transitions
        assert orchestrator.state == RunState.DONE
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_missing_descriptor_is_partial_failure(self, make_orchestrator, change_detector, fake_runner):
        change_detector.detect.return_value = changes(
            "src/emailservice/email_server.py", "src/paymentservice/index.js"
        )

        report = await make_orchestrator().run(BASE_SHA, HEAD_SHA)

        assert report.status == RunStatus.PARTIAL_FAILURE
        assert report.exit_code == 1
        email, payment = report.results
        assert not email.success
        assert email.failure_kind == FailureKind.DESCRIPTOR_NOT_FOUND
        assert "src/emailservice/Dockerfile" in email.error
        assert payment.success
        assert fake_runner.pushed() == ["shopuser/paymentservice:4f2a9c1", "shopuser/paymentservice:latest"]

    @pytest.mark.asyncio
    async def test_all_units_failing(self, make_orchestrator, change_detector, fake_runner):
        change_detector.detect.return_value = changes("src/frontend/a", "src/cartservice/b")
        fake_runner.fail_builds.update({"frontend", "cartservice"})

        report = await make_orchestrator().run(BASE_SHA, HEAD_SHA)

        assert report.status == RunStatus.ALL_FAILED
        assert report.exit_code == 2
        assert {r.failure_kind for r in report.results} == {FailureKind.BUILD_FAILED}
        assert fake_runner.pushed() == []

    @pytest.mark.asyncio
    async def test_push_conflict_fails_only_that_unit(
        self, make_orchestrator, change_detector, registry_client, fake_runner
    ):
        change_detector.detect.return_value = changes("src/frontend/a", "src/paymentservice/b")

        async def remote_digest(reference):
            return "sha256:other" if "frontend" in reference else None

        registry_client.get_config_digest.side_effect = remote_digest

        report = await make_orchestrator().run(BASE_SHA, HEAD_SHA)

        frontend, payment = report.results
        assert frontend.failure_kind == FailureKind.PUSH_CONFLICT
        assert "shopuser/frontend:4f2a9c1" in frontend.error
        assert payment.success
        assert report.status == RunStatus.PARTIAL_FAILURE


class TestRunLevelErrors:
    """Errors that abort before any unit is spawned"""

    @pytest.mark.asyncio
    async def test_history_unavailable(self, make_orchestrator, change_detector, fake_runner):
        change_detector.detect.side_effect = HistoryUnavailable("shallow clone")

        report = await make_orchestrator().run(BASE_SHA, HEAD_SHA)

        assert report.status == RunStatus.FAILED
        assert report.exit_code == 3
        assert "HistoryUnavailable" in report.error
        assert report.transitions == ["detecting", "done"]
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_missing_credentials(self, make_orchestrator, change_detector, fake_runner):
        change_detector.detect.return_value = changes("src/frontend/a")

        report = await make_orchestrator(credentials={'username': 'shopuser'}).run(BASE_SHA, HEAD_SHA)

        assert report.status == RunStatus.FAILED
        assert "ConfigurationError" in report.error
        assert report.results == []
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_rejected_login(self, make_orchestrator, change_detector, fake_runner):
        change_detector.detect.return_value = changes("src/frontend/a")
        fake_runner.login_fails = True

        report = await make_orchestrator().run(BASE_SHA, HEAD_SHA)

        assert report.status == RunStatus.FAILED
        assert "RegistryAuthFailure" in report.error
        assert fake_runner.commands("buildx") == []

    @pytest.mark.asyncio
    async def test_cancel_during_login_starts_no_unit(self, make_orchestrator, change_detector, fake_runner):
        change_detector.detect.return_value = changes("src/frontend/a")
        orchestrator = make_orchestrator()
        fake_runner.on_login = orchestrator.cancel_all

        report = await orchestrator.run(BASE_SHA, HEAD_SHA)

        assert report.status == RunStatus.FAILED
        assert report.exit_code == 3
        assert report.error.startswith("Cancelled")
        assert report.results == []
        assert "fanning_out" not in report.transitions
        assert fake_runner.commands("buildx") == []
        assert fake_runner.pushed() == []

    @pytest.mark.asyncio
    async def test_cancel_during_detection(self, make_orchestrator, change_detector, fake_runner):
        orchestrator = make_orchestrator()

        def detect(base, head):
            orchestrator.cancel_all()
            return changes("src/frontend/a")

        change_detector.detect.side_effect = detect

        report = await orchestrator.run(BASE_SHA, HEAD_SHA)

        assert report.status == RunStatus.FAILED
        assert report.transitions == ["detecting", "done"]
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_cancel_flag_resets_for_next_run(self, make_orchestrator, change_detector, fake_runner):
        change_detector.detect.return_value = changes("src/frontend/a")
        orchestrator = make_orchestrator()
        orchestrator.cancel_all()

        report = await orchestrator.run(BASE_SHA, HEAD_SHA)

        assert report.status == RunStatus.SUCCESS


class TestFanOut:
    """Isolation, failure policy and cancellation"""

    @pytest.mark.asyncio
    async def test_cache_promoted_only_for_successful_units(
        self, make_orchestrator, change_detector, fake_runner, layer_cache
    ):
        change_detector.detect.return_value = changes("src/frontend/a", "src/paymentservice/b")
        fake_runner.push_failures["shopuser/paymentservice:latest"] = 10

        report = await make_orchestrator().run(BASE_SHA, HEAD_SHA)

        assert report.results[1].failure_kind == FailureKind.PUSH_FAILED
        assert layer_cache.entry_path(layer_cache.key("frontend", HEAD_SHA)).is_dir()
        assert not layer_cache.entry_path(layer_cache.key("paymentservice", HEAD_SHA)).exists()
        assert not list(layer_cache.root.glob(".staging-*"))

    @pytest.mark.asyncio
    async def test_halt_policy_skips_units_not_yet_started(
        self, make_orchestrator, change_detector, fake_runner
    ):
        change_detector.detect.return_value = changes(
            "src/frontend/a", "src/cartservice/b", "src/paymentservice/c"
        )
        fake_runner.fail_builds.add("frontend")
        orchestrator = make_orchestrator(max_parallel=1, failure_policy=FailurePolicy.HALT)

        report = await orchestrator.run(BASE_SHA, HEAD_SHA)

        kinds = [r.failure_kind for r in report.results]
        assert kinds == [FailureKind.BUILD_FAILED, FailureKind.NOT_STARTED, FailureKind.NOT_STARTED]
        assert report.status == RunStatus.ALL_FAILED
        assert len(fake_runner.commands("buildx")) == 1

    @pytest.mark.asyncio
    async def test_continue_policy_runs_every_unit(self, make_orchestrator, change_detector, fake_runner):
        change_detector.detect.return_value = changes(
            "src/frontend/a", "src/cartservice/b", "src/paymentservice/c"
        )
        fake_runner.fail_builds.add("frontend")

        report = await make_orchestrator(max_parallel=1).run(BASE_SHA, HEAD_SHA)

        assert [r.success for r in report.results] == [False, True, True]
        assert report.status == RunStatus.PARTIAL_FAILURE

    @pytest.mark.asyncio
    async def test_cancel_one_unit_leaves_siblings_running(
        self, make_orchestrator, change_detector, fake_runner, layer_cache
    ):
        change_detector.detect.return_value = changes("src/frontend/a", "src/cartservice/b")
        fake_runner.block_builds.add("cartservice")
        previous = layer_cache.entry_path(layer_cache.key("cartservice", "olderref"))
        previous.mkdir(parents=True)
        orchestrator = make_orchestrator()

        run = asyncio.create_task(orchestrator.run(BASE_SHA, HEAD_SHA))
        await asyncio.wait_for(fake_runner.started("cartservice").wait(), timeout=5)
        assert orchestrator.cancel_unit("cartservice")
        report = await asyncio.wait_for(run, timeout=5)

        frontend, cart = report.results
        assert frontend.success
        assert cart.failure_kind == FailureKind.CANCELLED
        assert report.status == RunStatus.PARTIAL_FAILURE
        assert "shopuser/cartservice:latest" not in fake_runner.pushed()
        assert previous.is_dir()
        assert not list(layer_cache.root.glob(".staging-cartservice-*"))
        assert orchestrator.get_active_units() == []

    @pytest.mark.asyncio
    async def test_cancel_all(self, make_orchestrator, change_detector, fake_runner):
        change_detector.detect.return_value = changes("src/frontend/a", "src/cartservice/b")
        fake_runner.block_builds.update({"frontend", "cartservice"})
        orchestrator = make_orchestrator()

        run = asyncio.create_task(orchestrator.run(BASE_SHA, HEAD_SHA))
        await asyncio.wait_for(fake_runner.started("cartservice").wait(), timeout=5)
        await asyncio.wait_for(fake_runner.started("frontend").wait(), timeout=5)
        assert orchestrator.cancel_all() == 2
        report = await asyncio.wait_for(run, timeout=5)

        assert {r.failure_kind for r in report.results} == {FailureKind.CANCELLED}
        assert report.status == RunStatus.ALL_FAILED

    def test_cancel_unknown_unit(self, make_orchestrator):
        assert make_orchestrator().cancel_unit("frontend") is False

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, make_orchestrator, change_detector, fake_runner):
        change_detector.detect.return_value = changes("src/frontend/a", "src/paymentservice/b")
        orchestrator = make_orchestrator()
        real_publish = orchestrator.publisher.publish

        async def flaky_publish(image):
            if image.service.name == "frontend":
                raise KeyError("boom")
            return await real_publish(image)

        orchestrator.publisher.publish = flaky_publish

        report = await orchestrator.run(BASE_SHA, HEAD_SHA)

        assert report.results[0].failure_kind == FailureKind.INTERNAL_ERROR
        assert report.results[1].success

    @pytest.mark.asyncio
    async def test_cache_save_failure_keeps_unit_successful(
        self, make_orchestrator, change_detector, fake_runner, layer_cache
    ):
        change_detector.detect.return_value = changes("src/frontend/a")

        with patch.object(
            layer_cache, "promote", side_effect=OSError(errno.ENOSPC, "No space left on device")
        ):
            report = await make_orchestrator().run(BASE_SHA, HEAD_SHA)

        result = report.results[0]
        assert result.success
        assert report.status == RunStatus.SUCCESS
        assert any("layer cache not saved" in w for w in result.warnings)
        assert fake_runner.pushed() == ["shopuser/frontend:4f2a9c1", "shopuser/frontend:latest"]
        assert not list(layer_cache.root.glob(".staging-*"))


class TestAggregate:
    """Test final status computation"""

    def test_statuses(self):
        ok = Mock(success=True)
        bad = Mock(success=False)
        assert PipelineOrchestrator.aggregate([ok, ok]) == RunStatus.SUCCESS
        assert PipelineOrchestrator.aggregate([ok, bad]) == RunStatus.PARTIAL_FAILURE
        assert PipelineOrchestrator.aggregate([bad, bad]) == RunStatus.ALL_FAILED


class TestFromConfig:
    """Test wiring from a GlobalConfig"""

    def test_namespace_defaults_to_username(self, tmp_path):
        config = GlobalConfig.from_dict({'repository': {'root': str(tmp_path)}})
        orchestrator = PipelineOrchestrator.from_config(
            config, environ={'DOCKER_USERNAME': 'shopuser', 'CICD_DOCKERHUB': 'secret'}
        )
        assert orchestrator.image_builder.namespace == "shopuser"
        assert orchestrator.login_host is None
        assert orchestrator.credentials == CREDENTIALS
        assert isinstance(orchestrator.registry, PathRegistry)

    def test_custom_registry_logs_in_to_its_host(self, tmp_path):
        config = GlobalConfig.from_dict({
            'registry': {'host': 'ghcr.io', 'namespace': 'ghcr.io/acme'},
        })
        orchestrator = PipelineOrchestrator.from_config(config, environ={})
        assert orchestrator.login_host == "ghcr.io"
        assert orchestrator.image_builder.namespace == "ghcr.io/acme"

    def test_default_namespace_on_other_registry_includes_host(self):
        config = GlobalConfig.from_dict({'registry': {'host': 'ghcr.io'}})
        orchestrator = PipelineOrchestrator.from_config(
            config, environ={'DOCKER_USERNAME': 'acme', 'CICD_DOCKERHUB': 'secret'}
        )
        frontend = ServiceDescriptor.from_path("src/frontend")
        tags = orchestrator.image_builder.tags_for(frontend, HEAD_SHA)
        assert tags.immutable == "ghcr.io/acme/frontend:4f2a9c1"
        assert orchestrator.login_host == "ghcr.io"
        assert orchestrator.publisher.registry_client.host == "ghcr.io"

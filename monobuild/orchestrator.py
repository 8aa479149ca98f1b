"""
Main orchestrator for selective build-and-publish runs.
"""
import asyncio
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

from .build.cache import LayerCache
from .build.change_detector import ChangeDetector
from .build.descriptor import BuildDescriptorResolver
from .build.image_builder import ImageBuilder
from .build.matrix import MatrixBuilder
from .config.global_config_loader import GlobalConfig
from .config.path_registry import PathRegistry
from .core.enums import FailureKind, FailurePolicy, RunState, RunStatus
from .core.errors import ConfigurationError, HistoryUnavailable, RegistryAuthFailure, UnitError
from .core.models import (
    DOCKER_HUB_ALIASES, BuildMatrix, BuildResult, PipelineReport, ServiceDescriptor
)
from .publish.publisher import Publisher
from .publish.registry_client import RegistryClient


CANCELLED_BEFORE_FAN_OUT = "Cancelled: run cancelled before any unit started"


class PipelineOrchestrator:
    """
    Sequences change detection, matrix computation and the per-service fan-out.

    Every matrix entry runs as an isolated build unit (resolve, build, push,
    promote cache) in its own task. A unit failure is recorded in its
    BuildResult and never cancels siblings.
    """

    def __init__(
        self,
        registry: PathRegistry,
        change_detector: ChangeDetector,
        resolver: BuildDescriptorResolver,
        image_builder: ImageBuilder,
        publisher: Publisher,
        layer_cache: LayerCache,
        credentials: Optional[Dict[str, Optional[str]]] = None,
        login_host: Optional[str] = None,
        max_parallel: int = 0,
        failure_policy: FailurePolicy = FailurePolicy.CONTINUE,
        reproducible: bool = True
    ):
        """
        Initialize pipeline orchestrator.

        Args:
            registry: Watched services
            change_detector: Diff between commit references
            resolver: Dockerfile lookup per service
            image_builder: Image build step
            publisher: Registry push step
            layer_cache: Layer cache store
            credentials: Registry ``username`` and ``password``
            login_host: Registry host for login, None for Docker Hub
            max_parallel: Concurrent units, 0 for one per matrix entry
            failure_policy: Whether units not yet started still start after a failure
            reproducible: Pin builds to the head commit timestamp
        """
        self.registry = registry
        self.change_detector = change_detector
        self.matrix_builder = MatrixBuilder(registry)
        self.resolver = resolver
        self.image_builder = image_builder
        self.publisher = publisher
        self.layer_cache = layer_cache
        self.credentials = credentials or {}
        self.login_host = login_host
        self.max_parallel = max_parallel
        self.failure_policy = failure_policy
        self.reproducible = reproducible

        self.state = RunState.IDLE
        self.active_units: Dict[str, asyncio.Task] = {}
        self._halted = False
        self._cancelled = False
        self._report: Optional[PipelineReport] = None
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(
        cls,
        config: GlobalConfig,
        environ: Optional[Dict[str, str]] = None
    ) -> 'PipelineOrchestrator':
        """Wire every component from a GlobalConfig"""
        credentials = config.registry.resolve_credentials(environ)
        repo_root = Path(config.repository.root)
        on_docker_hub = config.registry.host in DOCKER_HUB_ALIASES

        namespace = config.registry.namespace
        if not namespace and credentials['username']:
            namespace = credentials['username']
            if not on_docker_hub:
                namespace = f"{config.registry.host}/{namespace}"

        if config.registry.auth_host:
            login_host = config.registry.auth_host
        elif not on_docker_hub:
            login_host = config.registry.host
        else:
            login_host = None

        registry_client = RegistryClient(
            host=config.registry.host,
            username=credentials['username'],
            password=credentials['password'],
            scheme=config.registry.scheme,
            timeout=config.registry.http_timeout_seconds,
            max_retries=config.registry.push_retries,
            backoff=config.registry.retry_backoff_seconds,
            platform=config.build.platform,
        )

        return cls(
            registry=PathRegistry.from_config(config),
            change_detector=ChangeDetector(
                repo_root,
                git_binary=config.repository.git_binary,
                timeout=config.repository.git_timeout,
            ),
            resolver=BuildDescriptorResolver(repo_root, config.build.descriptor_file),
            image_builder=ImageBuilder(
                namespace=namespace,
                docker_binary=config.build.docker_binary,
                timeout=config.build.timeout_seconds,
                platform=config.build.platform,
                reproducible=config.build.reproducible,
            ),
            publisher=Publisher(
                registry_client,
                docker_binary=config.build.docker_binary,
                conflict_policy=config.push_conflict_policy,
                max_retries=config.registry.push_retries,
                backoff=config.registry.retry_backoff_seconds,
                push_timeout=config.registry.push_timeout_seconds,
            ),
            layer_cache=LayerCache(
                Path(config.cache.root),
                os_identifier=config.build.os_identifier,
                keep_per_service=config.cache.keep_per_service,
            ),
            credentials=credentials,
            login_host=login_host,
            max_parallel=config.fanout.max_parallel,
            failure_policy=config.failure_policy,
            reproducible=config.build.reproducible,
        )

    async def run(self, base: str, head: str) -> PipelineReport:
        """
        Main entry point for one triggering event.

        Args:
            base: Previous commit reference
            head: Commit reference to build

        Returns:
            PipelineReport; run-level errors are recorded, not raised
        """
        report = PipelineReport(base=base or "", head=head or "")
        self._report = report
        self._cancelled = False
        self._transition(RunState.DETECTING)

        try:
            change_set = await asyncio.to_thread(self.change_detector.detect, base, head)
        except HistoryUnavailable as e:
            return self._abort(f"HistoryUnavailable: {e}")
        if self._cancelled:
            return self._abort(CANCELLED_BEFORE_FAN_OUT)

        report.matrix = self.matrix_builder.build(change_set)
        self._transition(RunState.MATRIX_COMPUTED)

        if report.matrix.is_empty:
            self._transition(RunState.SKIPPED)
            report.status = RunStatus.SUCCESS
            self._transition(RunState.DONE)
            self.logger.info("No watched service changed, skipping build")
            return report

        try:
            await self.publisher.verify_credentials(
                self.credentials.get('username'),
                self.credentials.get('password'),
                self.login_host,
            )
        except (ConfigurationError, RegistryAuthFailure) as e:
            return self._abort(f"{type(e).__name__}: {e}")

        source_date_epoch = None
        if self.reproducible:
            source_date_epoch = await asyncio.to_thread(self.change_detector.commit_timestamp, head)

        if self._cancelled:
            return self._abort(CANCELLED_BEFORE_FAN_OUT)

        self._transition(RunState.FANNING_OUT)
        report.results = await self.fan_out(report.matrix, head, source_date_epoch)

        self._transition(RunState.AGGREGATING)
        report.status = self.aggregate(report.results)
        self._transition(RunState.DONE)

        self.logger.info(
            f"Run complete: status={report.status.value}, "
            f"succeeded={len(report.successful)}, failed={len(report.failed)}"
        )
        for result in report.failed:
            self.logger.error(
                f"{result.service.name} failed [{result.failure_kind.value}]: {result.error}"
            )
        return report

    async def fan_out(
        self,
        matrix: BuildMatrix,
        head: str,
        source_date_epoch: Optional[int] = None
    ) -> List[BuildResult]:
        """Run one isolated unit per matrix entry and wait for all of them"""
        self._halted = False
        semaphore = asyncio.Semaphore(self.max_parallel or len(matrix))

        tasks = []
        for service in matrix:
            task = asyncio.create_task(
                self._run_unit_guarded(service, head, semaphore, source_date_epoch),
                name=f"unit-{service.name}",
            )
            self.active_units[service.name] = task
            tasks.append((service, task))

        self.logger.info(f"Fanned out {len(tasks)} build unit(s)")
        outcomes = await asyncio.gather(*[task for _, task in tasks], return_exceptions=True)

        results = []
        for (service, _), outcome in zip(tasks, outcomes):
            self.active_units.pop(service.name, None)
            if isinstance(outcome, BuildResult):
                results.append(outcome)
            elif isinstance(outcome, asyncio.CancelledError):
                results.append(self._failure(service, FailureKind.CANCELLED, "cancelled before start"))
            else:
                results.append(self._failure(service, FailureKind.INTERNAL_ERROR, str(outcome)))
        return results

    async def _run_unit_guarded(
        self,
        service: ServiceDescriptor,
        head: str,
        semaphore: asyncio.Semaphore,
        source_date_epoch: Optional[int]
    ) -> BuildResult:
        try:
            async with semaphore:
                if self._halted:
                    return self._failure(
                        service, FailureKind.NOT_STARTED,
                        "not started, an earlier unit failed (failure_policy=halt)"
                    )
                result = await self.run_unit(service, head, source_date_epoch)
        except asyncio.CancelledError:
            self.logger.warning(f"{service.name}: unit cancelled")
            return self._failure(service, FailureKind.CANCELLED, "unit cancelled")

        if not result.success and self.failure_policy == FailurePolicy.HALT:
            self._halted = True
        return result

    async def run_unit(
        self,
        service: ServiceDescriptor,
        head: str,
        source_date_epoch: Optional[int] = None
    ) -> BuildResult:
        """
        Resolve, build and push one service, promoting its cache on success.

        Returns:
            BuildResult; unit-level errors are captured, cancellation propagates
        """
        unit_logger = logging.getLogger(f"{__name__}.{service.name}")
        started = time.monotonic()
        unit_logger.info(f"Building and pushing service: {service.path}")

        try:
            descriptor = self.resolver.resolve(service)
            async with self.layer_cache.staging(service.name, head) as staging:
                image = await self.image_builder.build(
                    service, descriptor, head, staging, source_date_epoch
                )
                warnings = await self.publisher.publish(image)
                staging.commit()
            if staging.promotion_error:
                warnings.append(staging.promotion_error)
        except UnitError as e:
            unit_logger.error(f"❌ {e}")
            return self._failure(service, e.kind, e.message, started)
        except Exception as e:
            unit_logger.exception(f"Unexpected error in build unit: {e}")
            return self._failure(service, FailureKind.INTERNAL_ERROR, str(e), started)

        unit_logger.info(f"✅ {service.name} published as {', '.join(image.tags.as_list())}")
        return BuildResult(
            service=service,
            success=True,
            tags=image.tags.as_list(),
            digest=image.digest,
            warnings=warnings,
            duration_seconds=time.monotonic() - started,
        )

    def cancel_unit(self, name: str) -> bool:
        """Cancel one in-flight unit without touching the others"""
        task = self.active_units.get(name)
        if task is None or task.done():
            return False
        task.cancel()
        self.logger.info(f"Cancelling unit: {name}")
        return True

    def cancel_all(self) -> int:
        """
        Cancel the run, e.g. when a newer run supersedes this one.

        In-flight units are cancelled now; a run that has not fanned out yet
        stops at its next checkpoint without starting any unit.

        Returns:
            Number of units cancelled
        """
        self._cancelled = True
        return sum(1 for name in list(self.active_units) if self.cancel_unit(name))

    def get_active_units(self) -> List[str]:
        return [name for name, task in self.active_units.items() if not task.done()]

    @staticmethod
    def aggregate(results: List[BuildResult]) -> RunStatus:
        succeeded = sum(1 for r in results if r.success)
        if succeeded == len(results):
            return RunStatus.SUCCESS
        if succeeded == 0:
            return RunStatus.ALL_FAILED
        return RunStatus.PARTIAL_FAILURE

    def _abort(self, message: str) -> PipelineReport:
        self.logger.error(f"Run aborted: {message}")
        self._report.error = message
        self._report.status = RunStatus.FAILED
        self._transition(RunState.DONE)
        return self._report

    def _transition(self, state: RunState):
        self.logger.debug(f"State: {self.state.value} -> {state.value}")
        self.state = state
        if self._report is not None:
            self._report.state = state
            self._report.transitions.append(state.value)

    @staticmethod
    def _failure(
        service: ServiceDescriptor,
        kind: FailureKind,
        message: str,
        started: Optional[float] = None
    ) -> BuildResult:
        return BuildResult(
            service=service,
            success=False,
            error=message,
            failure_kind=kind,
            duration_seconds=time.monotonic() - started if started is not None else 0.0,
        )

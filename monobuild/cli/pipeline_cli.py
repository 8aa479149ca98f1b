"""
CLI for selective monorepo image builds.
Thin wrapper over PipelineOrchestrator.
"""
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import click
import yaml

from ..build.change_detector import ChangeDetector
from ..build.matrix import MatrixBuilder
from ..config.global_config_loader import GlobalConfig, load_global_config
from ..config.path_registry import PathRegistry
from ..core.errors import ConfigurationError, HistoryUnavailable, RegistryAuthFailure
from ..orchestrator import PipelineOrchestrator


EXIT_RUN_ABORTED = 3

LOG_LEVELS = click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], case_sensitive=False)


def setup_logging(log_level: str):
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)]
    )


def _load_config(global_config: str) -> GlobalConfig:
    try:
        return load_global_config(global_config) if global_config else load_global_config()
    except ConfigurationError as e:
        raise click.ClickException(str(e))


@click.group()
def pipeline():
    """Build and publish images for services changed between two commits"""
    pass


@pipeline.command()
@click.option('--base', required=True, help='Previous commit reference')
@click.option('--head', required=True, help='Commit reference to build')
@click.option('--global-config', default=None, help='Path to monobuild YAML config')
@click.option('--json-report', default=None, type=click.Path(dir_okay=False),
              help='Write the run report as JSON to this file')
@click.option('--log-level', default='INFO', type=LOG_LEVELS, help='Log level')
def run(base: str, head: str, global_config: str, json_report: str, log_level: str):
    """Detect changes, then build and push every affected service"""
    setup_logging(log_level)
    logger = logging.getLogger(__name__)
    config = _load_config(global_config)

    try:
        orchestrator = PipelineOrchestrator.from_config(config)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    async def run_pipeline():
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, orchestrator.cancel_all)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {sig.name} not supported on this platform")
        return await orchestrator.run(base, head)

    report = asyncio.run(run_pipeline())
    report.print_summary()

    if json_report:
        with open(json_report, 'w') as f:
            json.dump(report.to_dict(), f, indent=2)
        logger.info(f"Report written to {json_report}")

    sys.exit(report.exit_code)


@pipeline.command()
@click.option('--base', required=True, help='Previous commit reference')
@click.option('--head', required=True, help='Commit reference to build')
@click.option('--global-config', default=None, help='Path to monobuild YAML config')
@click.option('--github-output', default=None, type=click.Path(dir_okay=False),
              help='Append services=<matrix json> to this file (e.g. $GITHUB_OUTPUT)')
@click.option('--log-level', default='INFO', type=LOG_LEVELS, help='Log level')
def detect(base: str, head: str, global_config: str, github_output: str, log_level: str):
    """Print the build matrix without building anything"""
    setup_logging(log_level)
    config = _load_config(global_config)

    try:
        registry = PathRegistry.from_config(config)
        detector = ChangeDetector(
            Path(config.repository.root),
            git_binary=config.repository.git_binary,
            timeout=config.repository.git_timeout,
        )
        matrix = MatrixBuilder(registry).build(detector.detect(base, head))
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    except HistoryUnavailable as e:
        click.echo(f"❌ HistoryUnavailable: {e}", err=True)
        sys.exit(EXIT_RUN_ABORTED)

    payload = matrix.to_json()
    click.echo(payload)

    if github_output:
        with open(github_output, 'a') as f:
            f.write(f"services={payload}\n")


@pipeline.command('build-unit')
@click.option('--service', 'service_ref', required=True, help='Service name or path from the registry')
@click.option('--head', required=True, help='Commit reference to build')
@click.option('--global-config', default=None, help='Path to monobuild YAML config')
@click.option('--log-level', default='INFO', type=LOG_LEVELS, help='Log level')
def build_unit(service_ref: str, head: str, global_config: str, log_level: str):
    """Build and push a single service (one matrix entry)"""
    setup_logging(log_level)
    config = _load_config(global_config)

    try:
        orchestrator = PipelineOrchestrator.from_config(config)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    service = orchestrator.registry.get(service_ref)
    if service is None:
        raise click.ClickException(f"Service not in registry: {service_ref}")

    async def run_single():
        await orchestrator.publisher.verify_credentials(
            orchestrator.credentials.get('username'),
            orchestrator.credentials.get('password'),
            orchestrator.login_host,
        )
        source_date_epoch = None
        if orchestrator.reproducible:
            source_date_epoch = await asyncio.to_thread(
                orchestrator.change_detector.commit_timestamp, head
            )
        return await orchestrator.run_unit(service, head, source_date_epoch)

    try:
        result = asyncio.run(run_single())
    except (ConfigurationError, RegistryAuthFailure) as e:
        click.echo(f"❌ {type(e).__name__}: {e}", err=True)
        sys.exit(EXIT_RUN_ABORTED)

    if result.success:
        click.echo(f"✅ {service.name}: {', '.join(result.tags)}")
        for warning in result.warnings:
            click.echo(f"⚠️  {warning}")
        sys.exit(0)

    click.echo(f"❌ {service.name} [{result.failure_kind.value}]: {result.error}", err=True)
    sys.exit(1)


@pipeline.command('trigger-paths')
@click.option('--global-config', default=None, help='Path to monobuild YAML config')
def trigger_paths(global_config: str):
    """Print the path filters the upstream trigger should watch"""
    config = _load_config(global_config)
    try:
        registry = PathRegistry.from_config(config)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    for path in registry.trigger_paths():
        click.echo(path)


@pipeline.command('show-config')
@click.option('--global-config', default=None, help='Path to monobuild YAML config')
def show_config(global_config: str):
    """Show the effective configuration"""
    config = _load_config(global_config)
    click.echo(yaml.safe_dump(config.to_dict(), default_flow_style=False, sort_keys=False))

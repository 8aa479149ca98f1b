"""
Builds one service image with docker buildx and a local layer cache.
"""
import json
import logging
import tempfile
from pathlib import Path
from typing import Callable, List, Optional

from ..core.errors import BuildFailed
from ..core.models import BuildDescriptor, BuiltImage, ImageTags, ServiceDescriptor
from ..utils.process import run_command
from .cache import StagingCache


CONFIG_DIGEST_KEY = "containerimage.config.digest"


class ImageBuilder:
    """Runs a cached, reproducible image build for one service"""

    def __init__(
        self,
        namespace: str,
        docker_binary: str = "docker",
        timeout: int = 1800,
        platform: Optional[str] = None,
        reproducible: bool = True,
        runner: Callable = run_command
    ):
        """
        Initialize image builder.

        Args:
            namespace: Registry namespace images are tagged under
            docker_binary: docker executable
            timeout: Build timeout in seconds
            platform: Optional target platform (e.g. linux/amd64)
            reproducible: Pin SOURCE_DATE_EPOCH and revision labels
            runner: Coroutine used to execute commands
        """
        self.namespace = namespace
        self.docker_binary = docker_binary
        self.timeout = timeout
        self.platform = platform
        self.reproducible = reproducible
        self.runner = runner
        self.logger = logging.getLogger(__name__)

    def tags_for(self, service: ServiceDescriptor, head: str) -> ImageTags:
        return ImageTags.for_service(self.namespace, service.name, head)

    def build_command(
        self,
        service: ServiceDescriptor,
        descriptor: BuildDescriptor,
        tags: ImageTags,
        head: str,
        cache_dest: Path,
        cache_src: Optional[Path],
        metadata_file: Path,
        source_date_epoch: Optional[int] = None
    ) -> List[str]:
        """Assemble the buildx command line"""
        command = [
            self.docker_binary, "buildx", "build",
            "--file", descriptor.dockerfile_path,
            "--tag", tags.stable,
            "--tag", tags.immutable,
        ]
        if self.platform:
            command += ["--platform", self.platform]
        if cache_src is not None:
            command += ["--cache-from", f"type=local,src={cache_src}"]
        command += [
            "--cache-to", f"type=local,dest={cache_dest},mode=max",
            "--metadata-file", str(metadata_file),
            "--load",
        ]
        if self.reproducible:
            if source_date_epoch is not None:
                command += ["--build-arg", f"SOURCE_DATE_EPOCH={source_date_epoch}"]
            command += [
                "--label", f"org.opencontainers.image.revision={head}",
                "--label", f"org.opencontainers.image.title={service.name}",
            ]
        command.append(descriptor.context_path)
        return command

    async def build(
        self,
        service: ServiceDescriptor,
        descriptor: BuildDescriptor,
        head: str,
        staging: StagingCache,
        source_date_epoch: Optional[int] = None
    ) -> BuiltImage:
        """
        Build the image, reading from the restored cache and writing to staging.

        Raises:
            BuildFailed: If buildx exits non-zero or times out
        """
        tags = self.tags_for(service, head)

        with tempfile.TemporaryDirectory(prefix=f"monobuild-{service.name}-") as tmp:
            metadata_file = Path(tmp) / "metadata.json"
            command = self.build_command(
                service, descriptor, tags, head,
                cache_dest=staging.path,
                cache_src=staging.read_path,
                metadata_file=metadata_file,
                source_date_epoch=source_date_epoch,
            )

            self.logger.info(f"Building {service.name}: {tags.stable}, {tags.immutable}")
            result = await self.runner(command, timeout=self.timeout)

            if not result.ok:
                self.logger.error(f"Build failed for {service.name}: {result.describe_failure(500)}")
                raise BuildFailed(service.name, result.describe_failure())

            digest = self._read_digest(metadata_file)

        self.logger.info(f"Built {service.name} ({digest or 'digest unknown'})")
        return BuiltImage(service=service, tags=tags, digest=digest)

    def _read_digest(self, metadata_file: Path) -> Optional[str]:
        if not metadata_file.exists():
            self.logger.warning(f"buildx wrote no metadata file at {metadata_file}")
            return None
        try:
            with open(metadata_file, 'r') as f:
                metadata = json.load(f)
        except (OSError, ValueError) as e:
            self.logger.warning(f"Could not read build metadata: {e}")
            return None
        return metadata.get(CONFIG_DIGEST_KEY)

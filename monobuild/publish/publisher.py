"""
Pushes built images to the registry.
"""
import asyncio
import logging
from typing import Callable, List, Optional

from ..core.enums import PushConflictPolicy
from ..core.errors import ConfigurationError, PushConflict, PushFailed, RegistryAuthFailure
from ..core.models import BuiltImage
from ..utils.process import run_command
from .registry_client import RegistryClient, RegistryError


class Publisher:
    """
    Publishes the stable and immutable tags of a built image.

    The immutable tag is checked against the registry first and is never
    overwritten with a different image. The stable tag is always pushed.
    """

    def __init__(
        self,
        registry_client: RegistryClient,
        docker_binary: str = "docker",
        conflict_policy: PushConflictPolicy = PushConflictPolicy.FAIL,
        max_retries: int = 3,
        backoff: float = 2.0,
        push_timeout: int = 600,
        runner: Callable = run_command
    ):
        self.registry_client = registry_client
        self.docker_binary = docker_binary
        self.conflict_policy = conflict_policy
        self.max_retries = max_retries
        self.backoff = backoff
        self.push_timeout = push_timeout
        self.runner = runner
        self.logger = logging.getLogger(__name__)

    async def verify_credentials(
        self,
        username: Optional[str],
        password: Optional[str],
        login_host: Optional[str] = None
    ):
        """
        Log in to the registry before any build starts.

        Raises:
            ConfigurationError: If either credential is missing
            RegistryAuthFailure: If the registry rejects them
        """
        missing = [name for name, value in (("username", username), ("password", password)) if not value]
        if missing:
            raise ConfigurationError(f"Registry credentials missing: {', '.join(missing)}")

        command = [self.docker_binary, "login", "--username", username, "--password-stdin"]
        if login_host:
            command.append(login_host)

        result = await self.runner(command, timeout=self.push_timeout, input_text=password)
        if not result.ok:
            raise RegistryAuthFailure(
                f"Registry login failed for {username}@{login_host or 'docker.io'}: "
                f"{result.describe_failure(500)}"
            )
        self.logger.info(f"Logged in to {login_host or 'docker.io'} as {username}")

    async def publish(self, image: BuiltImage) -> List[str]:
        """
        Push both tags of an image.

        Returns:
            Warnings raised while publishing (conflicts under the warn policy)

        Raises:
            PushConflict: Immutable tag points at a different image (fail policy)
            PushFailed: A push or registry lookup kept failing after retries
        """
        service = image.service.name
        warnings = []

        if await self._immutable_tag_is_free(image, warnings):
            await self._push(service, image.tags.immutable)

        await self._push(service, image.tags.stable)
        return warnings

    async def _immutable_tag_is_free(self, image: BuiltImage, warnings: List[str]) -> bool:
        service = image.service.name
        tag = image.tags.immutable

        try:
            remote_digest = await self.registry_client.get_config_digest(tag)
        except (RegistryError, ValueError) as e:
            raise PushFailed(service, tag, f"could not check existing tag: {e}")

        if remote_digest is None:
            return True

        if image.digest and remote_digest == image.digest:
            self.logger.info(f"{tag} already published with the same image, skipping push")
            return False

        conflict = PushConflict(service, tag, remote_digest, image.digest)
        if self.conflict_policy == PushConflictPolicy.FAIL:
            self.logger.error(str(conflict))
            raise conflict

        self.logger.warning(f"{conflict} (policy=warn, tag left unchanged)")
        warnings.append(conflict.message)
        return False

    async def _push(self, service: str, tag: str):
        last_error = "no attempt made"

        for attempt in range(self.max_retries):
            result = await self.runner(
                [self.docker_binary, "push", tag],
                timeout=self.push_timeout,
            )
            if result.ok:
                self.logger.info(f"Pushed {tag}")
                return

            last_error = result.describe_failure(500)
            self.logger.warning(
                f"Push of {tag} failed (attempt {attempt + 1}/{self.max_retries}): {last_error}"
            )
            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.backoff * (attempt + 1))

        raise PushFailed(service, tag, last_error)

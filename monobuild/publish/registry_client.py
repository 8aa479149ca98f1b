"""
Minimal Docker Registry HTTP API v2 client.

Only looks up what a tag currently points at; pushing goes through the
docker CLI.
"""
import asyncio
import logging
import re
from typing import Any, Dict, Optional, Tuple

import aiohttp

from ..core.models import DOCKER_HUB_ALIASES, DOCKER_HUB_HOST, registry_host_of

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"

INDEX_TYPES = (MANIFEST_LIST_V2, OCI_INDEX)
ACCEPT_HEADER = ", ".join((MANIFEST_V2, OCI_MANIFEST, MANIFEST_LIST_V2, OCI_INDEX))

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(Exception):
    """Raised when the registry cannot be queried"""


def split_reference(reference: str) -> Tuple[Optional[str], str, str]:
    """
    Split ``[host/]repository:tag`` into its parts.

    Returns:
        (host or None, repository, tag)
    """
    name, _, tag = reference.rpartition(":")
    if not name or "/" in tag:
        raise ValueError(f"Image reference has no tag: {reference!r}")

    host = registry_host_of(name)
    if host:
        return host, name[len(host) + 1:], tag
    return None, name, tag


class RegistryClient:
    """Reads manifests from a registry, handling the bearer token challenge"""

    def __init__(
        self,
        host: str = DOCKER_HUB_HOST,
        username: Optional[str] = None,
        password: Optional[str] = None,
        scheme: str = "https",
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff: float = 1.0,
        platform: Optional[str] = None
    ):
        self.host = host
        self.username = username
        self.password = password
        self.scheme = scheme
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self.platform = platform or "linux/amd64"
        self._tokens: Dict[str, str] = {}
        self.logger = logging.getLogger(f"{__name__}.RegistryClient")

    def _repository(self, reference: str) -> Tuple[str, str]:
        host, repository, tag = split_reference(reference)
        if self.host in DOCKER_HUB_ALIASES:
            hosted_here = host is None or host in DOCKER_HUB_ALIASES
        else:
            hosted_here = host == self.host
        if not hosted_here:
            raise RegistryError(f"Reference {reference} is not hosted on {self.host}")
        return repository, tag

    async def get_config_digest(self, reference: str) -> Optional[str]:
        """
        Image config digest currently published under a tag.

        For a manifest list or OCI index the manifest for the configured
        platform is followed.

        Args:
            reference: ``namespace/name:tag`` reference

        Returns:
            Config digest, or None if the tag does not exist

        Raises:
            RegistryError: If the registry cannot be reached after retries
        """
        repository, tag = self._repository(reference)

        for attempt in range(self.max_retries):
            try:
                timeout = aiohttp.ClientTimeout(total=self.timeout)
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    manifest = await self._get_manifest(session, repository, tag)
                    if manifest is None:
                        return None
                    if manifest.get("mediaType") in INDEX_TYPES or "manifests" in manifest:
                        child = self._select_platform(manifest)
                        if child is None:
                            return None
                        manifest = await self._get_manifest(session, repository, child)
                        if manifest is None:
                            return None
                    return (manifest.get("config") or {}).get("digest")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self.logger.warning(
                    f"Failed to query {reference} (attempt {attempt + 1}/{self.max_retries}): {e}"
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.backoff * (attempt + 1))

        raise RegistryError(f"Could not query {reference} after {self.max_retries} attempts")

    async def _get_manifest(
        self,
        session: aiohttp.ClientSession,
        repository: str,
        reference: str,
        authenticate: bool = True
    ) -> Optional[Dict[str, Any]]:
        url = f"{self.scheme}://{self.host}/v2/{repository}/manifests/{reference}"
        headers = {"Accept": ACCEPT_HEADER}

        token = self._tokens.get(repository)
        if token:
            headers["Authorization"] = f"Bearer {token}"

        async with session.get(url, headers=headers) as response:
            if response.status == 401 and authenticate:
                challenge = response.headers.get("WWW-Authenticate", "")
            else:
                if response.status == 404:
                    return None
                response.raise_for_status()
                return await response.json(content_type=None)

        # missing or expired token: answer the challenge once
        self._tokens.pop(repository, None)
        token = await self._fetch_token(session, challenge)
        if not token:
            raise RegistryError(
                f"Registry {self.host} refused access to {repository} without a bearer challenge"
            )
        self._tokens[repository] = token
        return await self._get_manifest(session, repository, reference, authenticate=False)

    async def _fetch_token(self, session: aiohttp.ClientSession, challenge: str) -> Optional[str]:
        scheme, _, params = challenge.partition(" ")
        if scheme.lower() != "bearer":
            return None

        values = dict(_CHALLENGE_PARAM.findall(params))
        realm = values.pop("realm", None)
        if not realm:
            return None

        auth = None
        if self.username and self.password:
            auth = aiohttp.BasicAuth(self.username, self.password)

        async with session.get(realm, params=values, auth=auth) as response:
            response.raise_for_status()
            payload = await response.json(content_type=None)
        return payload.get("token") or payload.get("access_token")

    def _select_platform(self, index: Dict[str, Any]) -> Optional[str]:
        os_name, _, architecture = self.platform.partition("/")
        candidates = [
            m for m in index.get("manifests", [])
            if (m.get("platform") or {}).get("os") not in (None, "unknown")
        ]
        for manifest in candidates:
            platform = manifest["platform"]
            if platform.get("os") == os_name and platform.get("architecture") == architecture:
                return manifest.get("digest")
        return candidates[0].get("digest") if candidates else None

"""
Local layer cache store for buildx.

Each entry is a buildx ``type=local`` cache directory plus a ``.meta.json``
sidecar. Builds write into a staging directory that is promoted to a keyed
entry only after the unit succeeds, so a failed or cancelled unit never
touches a previously good cache.
"""
import json
import os
import shutil
import uuid
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass
class CacheEntryMetadata:
    """Metadata for a stored cache entry"""
    key: str
    os_identifier: str
    service: str
    head: str
    written_at: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CacheEntryMetadata':
        """Create from dictionary"""
        return cls(**data)


class StagingCache:
    """
    Scoped handle on a staging cache directory.

    Use as an async context manager; call ``commit()`` once the build and
    push have succeeded. Leaving the block without a commit, or with an
    exception, discards the staging directory.
    """

    def __init__(self, layer_cache: 'LayerCache', service: str, head: str):
        self.layer_cache = layer_cache
        self.service = service
        self.head = head
        self.path = layer_cache.root / f".staging-{service}-{uuid.uuid4().hex[:8]}"
        self.read_path: Optional[Path] = None
        self.committed = False
        self.promoted: Optional[Path] = None
        self.promotion_error: Optional[str] = None
        self.logger = logging.getLogger(f"{__name__}.StagingCache")

    async def __aenter__(self) -> 'StagingCache':
        self.layer_cache.root.mkdir(parents=True, exist_ok=True)
        self.read_path = self.layer_cache.restore(self.service, self.head)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None and self.committed:
            try:
                self.promoted = self.layer_cache.promote(self.path, self.service, self.head)
            except OSError as e:
                # a lost cache never fails a published unit
                self.promotion_error = f"layer cache not saved: {e}"
                self.logger.warning(f"{self.service}: {self.promotion_error}")
            finally:
                self.discard()
        else:
            reason = exc_type.__name__ if exc_type else "not committed"
            self.logger.info(f"{self.service}: discarding staging cache ({reason})")
            self.discard()
        return False

    def commit(self):
        """Mark the staging cache for promotion on exit"""
        self.committed = True

    def discard(self):
        if self.path.exists():
            shutil.rmtree(self.path, ignore_errors=True)


class LayerCache:
    """Keyed store of buildx local cache directories"""

    def __init__(self, root: Path, os_identifier: str = "Linux", keep_per_service: int = 3):
        """
        Initialize layer cache.

        Args:
            root: Directory holding cache entries
            os_identifier: Runner OS, first component of every key
            keep_per_service: Entries kept per service after a promotion
        """
        self.root = Path(root)
        self.os_identifier = os_identifier
        self.keep_per_service = keep_per_service
        self.logger = logging.getLogger(__name__)

    def key(self, service: str, head: str) -> str:
        """Primary key for a (service, head) build"""
        return f"{self.restore_prefix(service)}{head}"

    def restore_prefix(self, service: str) -> str:
        """Fallback key prefix shared by every build of a service"""
        return f"{self.os_identifier}-buildx-{service}-"

    def entry_path(self, key: str) -> Path:
        return self.root / key

    def metadata_path(self, key: str) -> Path:
        return self.root / f"{key}.meta.json"

    def staging(self, service: str, head: str) -> StagingCache:
        """Create a staging handle for one build unit"""
        return StagingCache(self, service, head)

    def restore(self, service: str, head: str) -> Optional[Path]:
        """
        Find the cache directory to read from.

        Tries the primary key first, then the most recently written entry
        for the same OS and service. A miss returns None.
        """
        primary = self.key(service, head)
        if self.entry_path(primary).is_dir():
            self.logger.info(f"{service}: cache hit on {primary}")
            return self.entry_path(primary)

        for metadata in self.list_entries(service):
            path = self.entry_path(metadata.key)
            if path.is_dir():
                self.logger.info(f"{service}: restored cache from fallback {metadata.key}")
                return path

        self.logger.info(f"{service}: cache miss for {primary}")
        return None

    def list_entries(self, service: str) -> List[CacheEntryMetadata]:
        """Entries for a service on this OS, most recently written first"""
        entries = []
        if not self.root.exists():
            return entries

        for metadata_file in self.root.glob(f"{self.restore_prefix(service)}*.meta.json"):
            try:
                with open(metadata_file, 'r') as f:
                    metadata = CacheEntryMetadata.from_dict(json.load(f))
            except (OSError, ValueError, TypeError) as e:
                self.logger.warning(f"Ignoring unreadable cache metadata {metadata_file}: {e}")
                continue
            # prefix globbing also matches services whose name extends this one
            if metadata.service == service and metadata.os_identifier == self.os_identifier:
                entries.append(metadata)

        entries.sort(key=lambda m: m.written_at, reverse=True)
        return entries

    def promote(self, staging_path: Path, service: str, head: str) -> Optional[Path]:
        """
        Move a staging directory into place under the primary key.

        Returns:
            Path of the promoted entry, or None if the build wrote no cache
        """
        if not staging_path.is_dir():
            self.logger.warning(f"{service}: build produced no cache to promote")
            return None

        key = self.key(service, head)
        final_path = self.entry_path(key)
        trash_path = self.root / f".trash-{uuid.uuid4().hex[:8]}"

        metadata = CacheEntryMetadata(
            key=key,
            os_identifier=self.os_identifier,
            service=service,
            head=head,
            written_at=datetime.now(timezone.utc).isoformat(),
        )
        temp_meta = self.root / f".temp_{uuid.uuid4().hex[:8]}.meta.json"

        try:
            with open(temp_meta, 'w') as f:
                json.dump(metadata.to_dict(), f, indent=2)

            if final_path.exists():
                os.rename(str(final_path), str(trash_path))
            try:
                os.rename(str(staging_path), str(final_path))
            except OSError:
                if trash_path.exists() and not final_path.exists():
                    os.rename(str(trash_path), str(final_path))
                raise
            os.rename(str(temp_meta), str(self.metadata_path(key)))
        finally:
            if temp_meta.exists():
                temp_meta.unlink()
            if trash_path.exists():
                shutil.rmtree(trash_path, ignore_errors=True)

        self.logger.info(f"{service}: promoted cache to {key}")
        self.prune(service)
        return final_path

    def prune(self, service: str, keep: Optional[int] = None) -> List[str]:
        """Remove all but the most recent entries of a service"""
        keep = self.keep_per_service if keep is None else keep
        removed = []

        for metadata in self.list_entries(service)[keep:]:
            shutil.rmtree(self.entry_path(metadata.key), ignore_errors=True)
            metadata_file = self.metadata_path(metadata.key)
            if metadata_file.exists():
                metadata_file.unlink()
            removed.append(metadata.key)
            self.logger.debug(f"{service}: pruned cache entry {metadata.key}")

        return removed

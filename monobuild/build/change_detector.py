"""
Detects files changed between two commit references.
"""
import logging
import subprocess
from pathlib import Path
from typing import List, Optional

from ..core.errors import HistoryUnavailable
from ..core.models import ChangeSet


class ChangeDetector:
    """Computes the set of repository paths touched between two commits"""

    def __init__(self, repo_root: Path, git_binary: str = "git", timeout: int = 120):
        """
        Initialize change detector.

        Args:
            repo_root: Root of the monorepo checkout
            git_binary: git executable
            timeout: Timeout for each git invocation in seconds
        """
        self.repo_root = Path(repo_root)
        self.git_binary = git_binary
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def detect(self, base: str, head: str) -> ChangeSet:
        """
        Detect changed paths between base and head.

        Args:
            base: Base commit reference (the previous tip)
            head: Head commit reference (the commit being built)

        Returns:
            ChangeSet; empty when base equals head or base has no history

        Raises:
            HistoryUnavailable: If the checkout is shallow or a ref does not resolve
        """
        base = (base or "").strip()
        head = (head or "").strip()
        if not head:
            raise HistoryUnavailable("Head commit reference is empty")

        self._ensure_full_history()
        head_sha = self._resolve_commit(head)

        if self.is_null_ref(base):
            self.logger.info(f"No history before {head[:7]}, nothing to diff")
            return ChangeSet(base=base, head=head)

        base_sha = self._resolve_commit(base)
        if base_sha == head_sha:
            self.logger.info(f"Base and head are the same commit ({head_sha[:7]})")
            return ChangeSet(base=base, head=head)

        output = self._git(
            "diff", "--name-only", "--no-renames", "-z", base_sha, head_sha,
            error=f"Failed to diff {base} and {head}"
        )
        changed = {path for path in output.split("\0") if path}

        self.logger.info(f"Changed files between {base_sha[:7]} and {head_sha[:7]}: {len(changed)}")
        for path in sorted(changed):
            self.logger.debug(f"  {path}")

        return ChangeSet(base=base, head=head, changed_paths=frozenset(changed))

    def commit_timestamp(self, ref: str) -> Optional[int]:
        """Committer timestamp of ref, or None if it cannot be read"""
        try:
            output = self._git("log", "-1", "--format=%ct", ref, error=f"Failed to read {ref}")
            return int(output.strip())
        except (HistoryUnavailable, ValueError) as e:
            self.logger.warning(f"Could not read commit timestamp for {ref}: {e}")
            return None

    @staticmethod
    def is_null_ref(ref: Optional[str]) -> bool:
        """True for an absent base, e.g. the all-zero sha sent for a new branch"""
        return not ref or set(ref) == {"0"}

    def _ensure_full_history(self):
        shallow = self._git(
            "rev-parse", "--is-shallow-repository",
            error=f"Not a git repository: {self.repo_root}"
        ).strip()
        if shallow == "true":
            raise HistoryUnavailable(
                f"Repository at {self.repo_root} is a shallow clone; "
                "full history is required to diff commits (fetch with depth 0)"
            )

    def _resolve_commit(self, ref: str) -> str:
        return self._git(
            "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}",
            error=f"Commit {ref} is not reachable in the repository history"
        ).strip()

    def _git(self, *args: str, error: str) -> str:
        command: List[str] = [self.git_binary, *args]
        try:
            proc = subprocess.run(
                command,
                cwd=str(self.repo_root),
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise HistoryUnavailable(f"{error}: {e}")

        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            raise HistoryUnavailable(f"{error}: {stderr}" if stderr else error)
        return proc.stdout

"""Pytest configuration and fixtures for monobuild tests."""

import asyncio
import json
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional
import pytest
import logging

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from monobuild.config.global_config_loader import DEFAULT_SERVICES
from monobuild.config.path_registry import PathRegistry
from monobuild.utils.process import CommandResult

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


HEAD_SHA = "4f2a9c1e0b7d3a5c8e9f1a2b3c4d5e6f7a8b9c0d"
BASE_SHA = "1a2b3c4d5e6f7a8b9c0d1e2f3a4b5c6d7e8f9a0b"

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _option(args: List[str], name: str) -> Optional[str]:
    """Value following an option in a command line"""
    if name in args:
        return args[args.index(name) + 1]
    return None


class FakeRunner:
    """
    Stands in for docker: records commands, emulates buildx outputs.

    ``fail_builds`` and ``push_failures`` make chosen commands fail;
    ``block_builds`` makes the build of a service hang until cancelled;
    ``on_login`` is called whenever docker login runs.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self.fail_builds = set()
        self.push_failures: Dict[str, int] = {}
        self.login_fails = False
        self.on_login = None
        self.block_builds = set()
        self.build_started: Dict[str, asyncio.Event] = {}

    def commands(self, verb: str) -> List[List[str]]:
        return [c for c in self.calls if verb in c[1:3]]

    def pushed(self) -> List[str]:
        return [c[2] for c in self.calls if c[1] == "push"]

    def started(self, service: str) -> asyncio.Event:
        return self.build_started.setdefault(service, asyncio.Event())

    async def __call__(self, args, timeout=None, input_text=None, **kwargs) -> CommandResult:
        args = list(args)
        self.calls.append(args)

        if args[1] == "login":
            if self.on_login:
                self.on_login()
            if self.login_fails:
                return CommandResult(args, 1, "", "unauthorized: incorrect username or password")
            return CommandResult(args, 0, "Login Succeeded", "")

        if args[1] == "push":
            remaining = self.push_failures.get(args[2], 0)
            if remaining:
                self.push_failures[args[2]] = remaining - 1
                return CommandResult(args, 1, "", "net/http: TLS handshake timeout")
            return CommandResult(args, 0, "", "")

        if args[1:3] == ["buildx", "build"]:
            service = _option(args, "--tag").split("/")[-1].split(":")[0]
            self.started(service).set()
            if service in self.block_builds:
                await asyncio.Event().wait()
            if service in self.fail_builds:
                return CommandResult(args, 1, "", "ERROR: failed to solve: process did not complete")

            cache_to = _option(args, "--cache-to")
            dest = dict(part.split("=", 1) for part in cache_to.split(","))["dest"]
            Path(dest).mkdir(parents=True, exist_ok=True)
            (Path(dest) / "index.json").write_text(json.dumps({"service": service}))

            metadata_file = _option(args, "--metadata-file")
            with open(metadata_file, "w") as f:
                json.dump({"containerimage.config.digest": f"sha256:{service}"}, f)
            return CommandResult(args, 0, "", "")

        return CommandResult(args, 0, "", "")


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def path_registry() -> PathRegistry:
    """Registry of the default watched services."""
    return PathRegistry.from_paths(DEFAULT_SERVICES, ["release"])


@pytest.fixture
def monorepo(tmp_path) -> Path:
    """Monorepo checkout with services in both Dockerfile layouts."""
    root = tmp_path / "repo"
    (root / "src" / "frontend").mkdir(parents=True)
    (root / "src" / "frontend" / "Dockerfile").write_text("FROM scratch\n")
    (root / "src" / "cartservice" / "src").mkdir(parents=True)
    (root / "src" / "cartservice" / "src" / "Dockerfile").write_text("FROM scratch\n")
    (root / "src" / "paymentservice").mkdir(parents=True)
    (root / "src" / "paymentservice" / "Dockerfile").write_text("FROM scratch\n")
    (root / "src" / "emailservice").mkdir(parents=True)
    return root


class GitRepo:
    """Throwaway git repository for change detection tests"""

    def __init__(self, path: Path):
        self.path = path
        self.path.mkdir(parents=True, exist_ok=True)
        self.git("init", "-q")

    def git(self, *args: str) -> str:
        proc = subprocess.run(
            ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
            cwd=str(self.path),
            check=True,
            capture_output=True,
            text=True,
        )
        return proc.stdout.strip()

    def commit(self, files: Dict[str, Optional[str]], message: str = "change") -> str:
        """Write (or delete, for None) files and commit; returns the new sha"""
        for relative, content in files.items():
            target = self.path / relative
            if content is None:
                target.unlink()
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content)
        self.git("add", "-A")
        self.git("commit", "-q", "--allow-empty", "-m", message)
        return self.git("rev-parse", "HEAD")


@pytest.fixture
def git_repo(tmp_path) -> GitRepo:
    return GitRepo(tmp_path / "git")

"""
Source control operations for app repositories.

Clones live under <data_dir>/repos/<slug>. All git calls run as asyncio
subprocesses; failures surface as GitError with git's combined output.
"""

import asyncio
import json
import logging
import re
import shutil
from pathlib import Path

from nas_common.errors import DockerfileNotFoundError, GitError, InvalidRepositoryError
from nas_common.models import (
    DEFAULT_INTERNAL_PORT,
    AppManifest,
    CloneResult,
    UpdateCheckResult,
    short_commit,
)

logger = logging.getLogger(__name__)

MANIFEST_FILE = "nas-controller.json"

# Checked in order; the first match wins
DOCKERFILE_CANDIDATES = (
    ("Dockerfile",),
    ("dockerfile",),
    ("docker", "Dockerfile"),
)

_URL_PREFIXES = ("https://", "http://", "ssh://", "git://", "git@", "file://")
_REPO_NAME_RE = re.compile(r"[/:]([^/:]+?)(?:\.git)?/*$")
_SLUG_INVALID_RE = re.compile(r"[^a-z0-9]+")


def extract_slug(repo_url: str) -> str:
    """
    Derive a URL- and filesystem-safe slug from a repository URL.

    The slug is the lowercased repository name with every run of characters
    outside [a-z0-9] collapsed to "-". It doubles as container name and image
    repository, so it must satisfy both naming rules.

    Args:
        repo_url: Repository URL (https, ssh, git@host:owner/repo, ...)

    Returns:
        Slug string, or "" if no repository name can be found
    """
    url = repo_url.strip()
    if not url.startswith(_URL_PREFIXES):
        return ""

    match = _REPO_NAME_RE.search(url)
    if not match:
        return ""

    return _SLUG_INVALID_RE.sub("-", match.group(1).lower()).strip("-")


def find_dockerfile(repo_path: Path) -> str | None:
    """
    Locate a Dockerfile in a checkout.

    Returns:
        Path relative to the repo root in "./x" form, or None
    """
    for parts in DOCKERFILE_CANDIDATES:
        if repo_path.joinpath(*parts).is_file():
            return "./" + "/".join(parts)
    return None


def read_manifest(repo_path: Path) -> AppManifest | None:
    """Read nas-controller.json from a checkout if present and valid."""
    manifest_path = repo_path / MANIFEST_FILE
    if not manifest_path.is_file():
        return None

    try:
        data = json.loads(manifest_path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable manifest {manifest_path}: {e}")
        return None

    if not isinstance(data, dict):
        logger.warning(f"Ignoring manifest {manifest_path}: not a JSON object")
        return None
    return AppManifest.from_dict(data)


class GitService:
    """Clones, updates and inspects app repositories with the git CLI."""

    def __init__(self, data_dir: str, git_bin: str = "git"):
        """
        Initialize the git service.

        Args:
            data_dir: Controller data directory; clones go to <data_dir>/repos
            git_bin: Name or path of the git binary
        """
        self.repos_dir = Path(data_dir) / "repos"
        self.repos_dir.mkdir(parents=True, exist_ok=True)
        self.git_bin = git_bin

    async def _git(self, *args: str) -> str:
        """
        Run a git command to completion.

        Returns:
            Stripped stdout

        Raises:
            GitError: If git exits non-zero
        """
        process = await asyncio.create_subprocess_exec(
            self.git_bin,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            command = args[2] if args[:1] == ("-C",) and len(args) > 2 else args[0]
            raise GitError(f"git {command} failed: {stderr.decode().strip()}")
        return stdout.decode().strip()

    def get_repo_path(self, slug: str) -> Path:
        return self.repos_dir / slug

    def extract_slug(self, repo_url: str) -> str:
        return extract_slug(repo_url)

    async def clone_repo(self, repo_url: str, branch: str) -> CloneResult:
        """
        Shallow-clone a single branch and validate it as an app source.

        Any existing working tree for the same slug is replaced.

        Args:
            repo_url: Repository URL
            branch: Branch to check out

        Returns:
            CloneResult describing the detected Dockerfile and manifest

        Raises:
            InvalidRepositoryError: If no slug can be derived from the URL
            GitError: If the clone fails
            DockerfileNotFoundError: If the checkout has no Dockerfile
        """
        slug = extract_slug(repo_url)
        if not slug:
            raise InvalidRepositoryError(f"invalid repository URL: {repo_url!r}")

        repo_path = self.get_repo_path(slug)
        shutil.rmtree(repo_path, ignore_errors=True)

        logger.info(f"Cloning {repo_url} ({branch}) into {repo_path}")
        await self._git(
            "clone", "--branch", branch, "--depth", "1", "--single-branch", repo_url, str(repo_path)
        )

        dockerfile_path = find_dockerfile(repo_path)
        if dockerfile_path is None:
            shutil.rmtree(repo_path, ignore_errors=True)
            raise DockerfileNotFoundError(
                "no Dockerfile found in repository. Please add a Dockerfile to your repo"
            )

        manifest = read_manifest(repo_path)

        result = CloneResult(
            slug=slug,
            name=slug,
            has_dockerfile=True,
            dockerfile_path=dockerfile_path,
            manifest=manifest,
            suggested_port=DEFAULT_INTERNAL_PORT,
        )
        if manifest is not None:
            result.name = manifest.name or slug
            result.description = manifest.description
            if manifest.default_port > 0:
                result.suggested_port = manifest.default_port

        return result

    async def pull_repo(self, slug: str, branch: str) -> str:
        """
        Fetch a branch and hard-reset the checkout to its tip.

        Returns:
            Full commit hash of the new HEAD

        Raises:
            GitError: If the checkout is missing or any git step fails
        """
        repo_path = self.get_repo_path(slug)
        if not repo_path.is_dir():
            raise GitError(f"repository not found: {slug}")

        await self._git("-C", str(repo_path), "fetch", "origin", branch)
        await self._git("-C", str(repo_path), "reset", "--hard", f"origin/{branch}")
        return await self._git("-C", str(repo_path), "rev-parse", "HEAD")

    async def get_last_commit(self, slug: str) -> str:
        """Return the short HEAD commit of a checkout."""
        commit = await self._git("-C", str(self.get_repo_path(slug)), "rev-parse", "HEAD")
        return short_commit(commit)

    async def check_for_updates(self, slug: str, branch: str) -> UpdateCheckResult:
        """
        Compare the local HEAD with the remote branch tip (fetches first).

        Raises:
            GitError: If the checkout is missing or any git step fails
        """
        repo_path = self.get_repo_path(slug)
        if not repo_path.is_dir():
            raise GitError(f"repository not found: {slug}")

        local_commit = await self._git("-C", str(repo_path), "rev-parse", "HEAD")
        await self._git("-C", str(repo_path), "fetch", "origin", branch)
        remote_commit = await self._git("-C", str(repo_path), "rev-parse", f"origin/{branch}")

        return UpdateCheckResult(
            has_update=local_commit != remote_commit,
            local_commit=short_commit(local_commit),
            remote_commit=short_commit(remote_commit),
        )

    def remove_repo(self, slug: str) -> None:
        """Delete a checkout from disk (missing checkouts are ignored)."""
        shutil.rmtree(self.get_repo_path(slug), ignore_errors=True)

    def get_repos_size(self) -> int:
        """Total size in bytes of every file under the repos directory."""
        return sum(p.stat().st_size for p in self.repos_dir.rglob("*") if p.is_file())

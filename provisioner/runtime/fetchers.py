"""Template source fetchers.

The template registry is scheme-agnostic: it asks ``FetcherRegistry`` for
the fetcher matching a source URL and lets it populate an empty staging
directory.  Three families are built in:

- **file**: ``file:///abs/path`` or a bare filesystem path -- directory copy.
- **archive**: ``http(s)://...`` ending in ``.tar.gz`` / ``.tgz`` / ``.zip``
  -- downloaded with httpx and extracted.  A single top-level directory in
  the archive is stripped.
- **git**: ``git+https://``, ``git+ssh://``, ``git://``, ``ssh://``,
  ``git@host:...``, any URL ending in ``.git``, or ``github.com/org/repo``
  shorthand -- shallow clone at the requested ref via the ``git`` CLI.

Fetchers return an optional version string (commit SHA, ETag) which the
registry records when present.
"""

from __future__ import annotations

import shutil
import tarfile
import tempfile
import zipfile
from functools import partial
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import unquote, urlparse

import anyio
import httpx
from anyio import to_thread
from loguru import logger

from provisioner.runtime.errors import FetchError
from provisioner.runtime.models.enums import SourceScheme

_ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar", ".zip")
_GIT_PREFIXES = ("git+https://", "git+http://", "git+ssh://", "git://", "ssh://", "git@")


@runtime_checkable
class Fetcher(Protocol):
    async def fetch(self, source_url: str, ref: str, dest: Path) -> str | None:
        """Populate the empty directory *dest*; return a version string if known.

        Raises ``FetchError`` if the source or ref cannot be retrieved.
        """
        ...


# ---------------------------------------------------------------------------
# Scheme detection
# ---------------------------------------------------------------------------


def source_scheme(source_url: str) -> SourceScheme:
    """Classify *source_url* into a fetcher family."""
    url = source_url.strip()
    lowered = url.lower()
    if lowered.startswith(_GIT_PREFIXES) or lowered.endswith(".git") or lowered.startswith("github.com/"):
        return SourceScheme.GIT
    if lowered.startswith(("http://", "https://")):
        path = urlparse(lowered).path
        if path.endswith(_ARCHIVE_SUFFIXES):
            return SourceScheme.ARCHIVE
        # Plain https URLs to a forge are repositories.
        return SourceScheme.GIT
    if lowered.startswith("file://") or "://" not in lowered:
        return SourceScheme.FILE
    msg = f"Unsupported template source: {source_url}"
    raise FetchError(msg)


def local_path(source_url: str) -> Path:
    """Filesystem path for a ``file://`` URL or bare path."""
    if source_url.startswith("file://"):
        parsed = urlparse(source_url)
        return Path(unquote(parsed.netloc + parsed.path))
    return Path(source_url).expanduser()


def git_clone_url(source_url: str) -> str:
    url = source_url.strip()
    if url.startswith("git+"):
        return url[len("git+") :]
    if url.startswith("github.com/"):
        return f"https://{url}"
    return url


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


class LocalFetcher:
    """Copy a local directory.  The ref is recorded but not interpreted."""

    async def fetch(self, source_url: str, ref: str, dest: Path) -> str | None:  # noqa: ARG002
        src = local_path(source_url)
        if not src.is_dir():
            msg = f"Template source directory does not exist: {src}"
            raise FetchError(msg)
        try:
            await to_thread.run_sync(partial(shutil.copytree, src, dest, dirs_exist_ok=True))
        except OSError as exc:
            msg = f"Failed to copy template source {src}: {exc}"
            raise FetchError(msg) from exc
        return None


class ArchiveFetcher:
    """Download and extract a tarball or zip over HTTP(S)."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 60.0) -> None:
        self._client = client
        self._timeout = timeout

    async def fetch(self, source_url: str, ref: str, dest: Path) -> str | None:  # noqa: ARG002
        own_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.get(source_url, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            msg = f"Failed to download {source_url}: {exc}"
            raise FetchError(msg) from exc
        finally:
            if own_client:
                await client.aclose()

        suffix = ".zip" if urlparse(source_url).path.lower().endswith(".zip") else ".tar.gz"
        try:
            await to_thread.run_sync(partial(_extract_archive, response.content, suffix, dest))
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as exc:
            msg = f"Failed to extract {source_url}: {exc}"
            raise FetchError(msg) from exc

        logger.debug("Fetched archive {} ({} bytes)", source_url, len(response.content))
        return response.headers.get("etag", "").strip('"') or None


class GitFetcher:
    """Shallow-clone a repository at a branch, tag or commit."""

    def __init__(self, binary: str = "git") -> None:
        self._binary = binary

    async def _git(self, *args: str, cwd: Path | None = None) -> str:
        try:
            result = await anyio.run_process([self._binary, *args], cwd=cwd, check=False)
        except OSError as exc:
            msg = f"git could not be started: {exc}"
            raise FetchError(msg) from exc
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            msg = f"git {args[0]} failed: {stderr}"
            raise FetchError(msg)
        return result.stdout.decode("utf-8", errors="replace").strip()

    async def fetch(self, source_url: str, ref: str, dest: Path) -> str | None:
        url = git_clone_url(source_url)
        try:
            await self._git("clone", "--depth", "1", "--branch", ref, url, str(dest))
        except FetchError:
            # Not a branch or tag -- try it as a commit.
            logger.debug("Shallow clone of {}@{} failed, retrying as commit", url, ref)
            await to_thread.run_sync(partial(_clear_directory, dest))
            await self._git("init", "--quiet", str(dest))
            await self._git("remote", "add", "origin", url, cwd=dest)
            try:
                await self._git("fetch", "--depth", "1", "origin", ref, cwd=dest)
            except FetchError as exc:
                msg = f"ref '{ref}' not found in {url}: {exc}"
                raise FetchError(msg) from exc
            await self._git("checkout", "--quiet", "FETCH_HEAD", cwd=dest)

        version = await self._git("rev-parse", "HEAD", cwd=dest)
        await to_thread.run_sync(partial(shutil.rmtree, dest / ".git", ignore_errors=True))
        return version


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class FetcherRegistry:
    """Maps source schemes to fetcher implementations."""

    def __init__(self, fetchers: dict[SourceScheme, Fetcher] | None = None) -> None:
        self._fetchers: dict[SourceScheme, Fetcher] = fetchers if fetchers is not None else default_fetchers()

    def register(self, scheme: SourceScheme, fetcher: Fetcher) -> None:
        self._fetchers[scheme] = fetcher

    def for_url(self, source_url: str) -> Fetcher:
        scheme = source_scheme(source_url)
        fetcher = self._fetchers.get(scheme)
        if fetcher is None:
            msg = f"No fetcher registered for {scheme} sources ({source_url})"
            raise FetchError(msg)
        return fetcher


def default_fetchers(timeout: float = 60.0) -> dict[SourceScheme, Fetcher]:
    return {
        SourceScheme.FILE: LocalFetcher(),
        SourceScheme.ARCHIVE: ArchiveFetcher(timeout=timeout),
        SourceScheme.GIT: GitFetcher(),
    }


# -- Sync helpers (run in thread pool) -----------------------------------------


def _clear_directory(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)


def _extract_archive(data: bytes, suffix: str, dest: Path) -> None:
    """Extract archive bytes into *dest*, stripping a lone top-level directory."""
    with tempfile.TemporaryDirectory() as tmp:
        tmp_dir = Path(tmp)
        archive = tmp_dir / f"archive{suffix}"
        archive.write_bytes(data)
        out = tmp_dir / "out"
        out.mkdir()
        if suffix == ".zip":
            with zipfile.ZipFile(archive) as zf:
                for member in zf.namelist():
                    target = (out / member).resolve()
                    if not target.is_relative_to(out.resolve()):
                        msg = f"Archive member escapes extraction root: {member}"
                        raise OSError(msg)
                zf.extractall(out)
        else:
            with tarfile.open(archive) as tf:
                tf.extractall(out, filter="data")

        entries = list(out.iterdir())
        root = entries[0] if len(entries) == 1 and entries[0].is_dir() else out
        shutil.copytree(root, dest, dirs_exist_ok=True)

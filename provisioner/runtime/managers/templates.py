"""Template registry -- fetch, cache, version, validate and resolve templates.

Layout under ``templates_dir``::

    registry.json            index of TemplateRecord by name
    cache/{name}/            materialized copy used at resolution time
    .staging/                in-progress fetches (never read by resolve)

The index is re-read from disk at the start of every operation so that the
daemon and the CLI can share one registry directory.  Mutations hold an
asyncio lock (tasks in this process) and ``registry.lock`` via filelock
(other processes) across the whole read-modify-write, and the index is
written with an atomic replace.

Fetches always land in ``.staging`` first.  Only a fully successful fetch is
swapped into ``cache/{name}``; a failed ``update`` leaves the previous cache
byte-identical.

The registry does not track which workspaces use a template.  ``remove``
asks the caller through an optional ``in_use`` callback.
"""

from __future__ import annotations

import asyncio
import json
import shutil
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any

import anyio
from anyio import to_thread
from filelock import FileLock
from loguru import logger

from provisioner.runtime.errors import (
    ActionTimeoutError,
    AlreadyExistsError,
    FetchError,
    InUseError,
    NotFoundError,
    ValidationFailedError,
)
from provisioner.runtime.execution.workdir import content_hash, copy_configuration, write_variables
from provisioner.runtime.fetchers import FetcherRegistry
from provisioner.runtime.models.template import TemplateIndex, TemplateRecord
from provisioner.runtime.models.workspace import validate_name
from provisioner.runtime.store.local import atomic_write

InUseCheck = Callable[[str], list[str]]
"""Returns the names of workspaces referencing a template."""

INDEX_FILE = "registry.json"
LOCK_FILE = "registry.lock"
DEFAULT_REF = "main"

_CONFIG_SUFFIXES = (".tf", ".tf.json")
_JSON_SUFFIXES = (".tf.json", ".tfvars.json")


class TemplateRegistry:
    """Owns the template index and cache.  Independent of scheduling."""

    def __init__(
        self,
        templates_dir: str | Path,
        *,
        fetchers: FetcherRegistry | None = None,
        fetch_timeout: float | None = 300.0,
    ) -> None:
        self._root = Path(templates_dir)
        self._fetchers = fetchers or FetcherRegistry()
        self._fetch_timeout = fetch_timeout
        self._lock = asyncio.Lock()
        # Acquired and released from different worker threads.
        self._file_lock = FileLock(self._root / LOCK_FILE, thread_local=False)

    # -- Paths -----------------------------------------------------------------

    @property
    def root(self) -> Path:
        return self._root

    def cache_path(self, name: str) -> Path:
        return self._root / "cache" / name

    @property
    def _index_path(self) -> Path:
        return self._root / INDEX_FILE

    # -- Locking ---------------------------------------------------------------

    @asynccontextmanager
    async def _mutation(self) -> AsyncIterator[None]:
        """Hold the registry exclusively, within this process and across processes."""
        async with self._lock:
            await to_thread.run_sync(self._acquire_file_lock)
            try:
                yield
            finally:
                self._file_lock.release()

    def _acquire_file_lock(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        self._file_lock.acquire()

    # -- Index I/O -------------------------------------------------------------

    async def _read_index(self) -> TemplateIndex:
        return await to_thread.run_sync(self._read_index_sync)

    def _read_index_sync(self) -> TemplateIndex:
        if not self._index_path.exists():
            return TemplateIndex()
        return TemplateIndex.model_validate_json(self._index_path.read_text(encoding="utf-8"))

    async def _write_index(self, index: TemplateIndex) -> None:
        await to_thread.run_sync(partial(atomic_write, self._index_path, index.model_dump_json(indent=2)))

    # -- Read ------------------------------------------------------------------

    async def list(self) -> list[TemplateRecord]:
        """Return all records, sorted by name.  No network I/O."""
        index = await self._read_index()
        return [index.templates[name] for name in sorted(index.templates)]

    async def get(self, name: str) -> TemplateRecord:
        """Get a record by name.  Raises ``NotFoundError`` if missing."""
        index = await self._read_index()
        record = index.templates.get(name)
        if record is None:
            raise NotFoundError("Template", name)
        return record

    # -- Add -------------------------------------------------------------------

    async def add(
        self,
        name: str,
        source_url: str,
        sub_path: str = "",
        ref: str = "",
        description: str = "",
    ) -> TemplateRecord:
        """Fetch a new template and record it.

        Raises ``AlreadyExistsError`` if the name is taken, ``FetchError`` if
        the source cannot be retrieved.
        """
        try:
            validate_name(name, "template name")
        except ValueError as exc:
            raise ValidationFailedError(str(exc)) from None

        async with self._mutation():
            index = await self._read_index()
            if name in index.templates:
                raise AlreadyExistsError("Template", name)

            now = datetime.now().astimezone()
            record = TemplateRecord(
                name=name,
                source_url=source_url,
                sub_path=sub_path.strip("/"),
                ref=ref or DEFAULT_REF,
                description=description,
                created_at=now,
                updated_at=now,
            )
            version, digest = await self._fetch_and_swap(record)
            record.version = version
            record.content_hash = digest

            index.templates[name] = record
            await self._write_index(index)

        logger.info("Template added: {} (source={}, ref={}, version={})", name, source_url, record.ref, version)
        return record

    # -- Update ----------------------------------------------------------------

    async def update(self, name: str) -> TemplateRecord:
        """Re-fetch from the recorded source and ref.

        On failure the previous cache and record are left untouched.
        """
        async with self._mutation():
            index = await self._read_index()
            record = index.templates.get(name)
            if record is None:
                raise NotFoundError("Template", name)

            version, digest = await self._fetch_and_swap(record)
            changed = digest != record.content_hash
            updated = record.model_copy(
                update={
                    "version": version,
                    "content_hash": digest,
                    "updated_at": datetime.now().astimezone(),
                }
            )
            index.templates[name] = updated
            await self._write_index(index)

        logger.info("Template updated: {} (version={}, changed={})", name, updated.version, changed)
        return updated

    # -- Remove ----------------------------------------------------------------

    async def remove(self, name: str, *, force: bool = False, in_use: InUseCheck | None = None) -> None:
        """Delete the record and cache.

        Raises ``InUseError`` when *in_use* reports referencing workspaces,
        unless *force* is set.
        """
        async with self._mutation():
            index = await self._read_index()
            if name not in index.templates:
                raise NotFoundError("Template", name)

            if not force and in_use is not None:
                users = in_use(name)
                if users:
                    raise InUseError(name, users)

            await to_thread.run_sync(partial(shutil.rmtree, self.cache_path(name), ignore_errors=True))
            del index.templates[name]
            await self._write_index(index)

        logger.info("Template removed: {} (force={})", name, force)

    # -- Validate --------------------------------------------------------------

    async def validate(self, name: str) -> list[str]:
        """Structurally check the cached content without applying it.

        Returns the relative paths of the configuration files checked.
        Raises ``ValidationFailedError`` with a human-readable cause.
        """
        await self.get(name)
        return await to_thread.run_sync(partial(validate_configuration_dir, self.cache_path(name)))

    # -- Resolve ---------------------------------------------------------------

    async def resolve(
        self,
        name: str,
        variables: dict[str, Any] | None = None,
        *,
        target_dir: str | Path,
    ) -> Path:
        """Materialize the cached template plus variable overrides into *target_dir*.

        The target mirrors the cache: tool state already there is preserved,
        other files missing from the template are deleted.  The caller owns
        *target_dir*; the shared cache is never written.
        """
        await self.get(name)
        cache = self.cache_path(name)
        if not cache.is_dir():
            msg = f"Template '{name}' has no cached content; run update"
            raise FetchError(msg)

        target = Path(target_dir)
        await to_thread.run_sync(partial(_materialize, cache, target, variables or {}))
        logger.debug("Template {} resolved into {}", name, target)
        return target

    # -- Internals -------------------------------------------------------------

    async def _fetch_and_swap(self, record: TemplateRecord) -> tuple[str, str]:
        """Fetch *record*'s source into staging, then replace the cache.

        Returns ``(version, content_hash)``.
        """
        staging = self._root / ".staging" / f"{record.name}-{uuid.uuid4().hex[:8]}"
        raw = staging / "raw"
        await to_thread.run_sync(partial(raw.mkdir, parents=True))
        try:
            fetcher = self._fetchers.for_url(record.source_url)
            try:
                with anyio.fail_after(self._fetch_timeout):
                    fetched_version = await fetcher.fetch(record.source_url, record.ref, raw)
            except TimeoutError:
                msg = f"Fetching template '{record.name}' timed out after {self._fetch_timeout}s"
                raise ActionTimeoutError(msg) from None

            content = raw / record.sub_path if record.sub_path else raw
            if not content.is_dir():
                msg = f"Sub-path '{record.sub_path}' not found in {record.source_url}"
                raise FetchError(msg)

            digest = await to_thread.run_sync(partial(content_hash, content))
            version = fetched_version or f"sha256:{digest[:12]}"
            await to_thread.run_sync(partial(_swap_into_place, content, self.cache_path(record.name)))
        finally:
            await to_thread.run_sync(partial(shutil.rmtree, staging, ignore_errors=True))
        return version, digest


# -- Sync helpers (run in thread pool) -----------------------------------------


def _swap_into_place(content: Path, cache: Path) -> None:
    """Replace *cache* with *content*, keeping the old copy until the rename succeeds."""
    cache.parent.mkdir(parents=True, exist_ok=True)
    trash = cache.with_name(f".{cache.name}.old-{uuid.uuid4().hex[:8]}")
    if cache.exists():
        cache.rename(trash)
    try:
        shutil.move(str(content), str(cache))
    except BaseException:
        if trash.exists() and not cache.exists():
            trash.rename(cache)
        raise
    shutil.rmtree(trash, ignore_errors=True)


def _materialize(cache: Path, target: Path, variables: dict[str, Any]) -> None:
    copy_configuration(cache, target)
    write_variables(target, variables)


def validate_configuration_dir(root: Path) -> list[str]:
    """Check that *root* holds parseable-looking infrastructure configuration."""
    if not root.is_dir():
        msg = f"Configuration directory does not exist: {root}"
        raise ValidationFailedError(msg)

    config_files = sorted(p for p in root.rglob("*") if p.is_file() and p.name.endswith(_CONFIG_SUFFIXES))
    if not config_files:
        msg = f"No configuration files (*.tf, *.tf.json) found in {root}"
        raise ValidationFailedError(msg)

    checked: list[str] = []
    for path in sorted({*config_files, *(p for p in root.rglob("*.tfvars.json") if p.is_file())}):
        rel = path.relative_to(root).as_posix()
        text = path.read_text(encoding="utf-8", errors="replace")
        if path.name.endswith(_JSON_SUFFIXES):
            try:
                json.loads(text)
            except json.JSONDecodeError as exc:
                msg = f"{rel}: invalid JSON: {exc}"
                raise ValidationFailedError(msg) from None
        else:
            problem = check_hcl_balance(text)
            if problem:
                msg = f"{rel}: {problem}"
                raise ValidationFailedError(msg)
        checked.append(rel)
    return checked


_CLOSERS = {"}": "{", "]": "[", ")": "("}


def check_hcl_balance(text: str) -> str | None:
    """Return a description of the first bracket imbalance, or ``None``.

    Skips quoted strings, ``#`` / ``//`` line comments and ``/* */`` blocks.
    Heredoc bodies are not special-cased.
    """
    stack: list[tuple[str, int]] = []
    line = 1
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "\n":
            line += 1
        elif ch == '"':
            i += 1
            while i < n and text[i] != '"':
                if text[i] == "\\":
                    i += 1
                elif text[i] == "\n":
                    return f"unterminated string on line {line}"
                i += 1
            if i >= n:
                return f"unterminated string on line {line}"
        elif ch == "#" or text.startswith("//", i):
            while i < n and text[i] != "\n":
                i += 1
            continue
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            if end == -1:
                return f"unterminated block comment starting on line {line}"
            line += text.count("\n", i, end)
            i = end + 2
            continue
        elif ch in "{[(":
            stack.append((ch, line))
        elif ch in _CLOSERS:
            if not stack or stack[-1][0] != _CLOSERS[ch]:
                return f"unexpected '{ch}' on line {line}"
            stack.pop()
        i += 1

    if stack:
        opener, opened_at = stack[-1]
        return f"unclosed '{opener}' opened on line {opened_at}"
    return None

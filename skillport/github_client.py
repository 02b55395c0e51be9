"""
skillport.github_client

Async client for the GitHub contents API, the tree-structured remote store
that hosts the marketplace. Reads come in three shapes (single file, directory
listing, recursive tree); writes go through the optimistic-concurrency guard
of the API: every update carries the blob SHA read immediately before it, and
a stale SHA fails with a conflict instead of overwriting.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from collections.abc import Awaitable, Iterable
from typing import Any, TypeVar
from urllib.parse import quote

import httpx

from skillport.errors import (
    ConflictError,
    InvalidError,
    NotFoundError,
    PartialFailureError,
    RateLimitedError,
    RemoteAuthError,
    RemoteError,
    RemoteUnavailableError,
    SkillportError,
)
from skillport.settings import DEFAULT_API_URL, USER_AGENT

logger = logging.getLogger(__name__)

T = TypeVar("T")

MEDIA_RAW = "application/vnd.github.v3.raw"
MEDIA_JSON = "application/vnd.github.v3+json"

# Files with these extensions travel through the base64 channel.
BINARY_EXTENSIONS = frozenset(
    {
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".webp",
        ".ico",
        ".bmp",
        ".pdf",
        ".zip",
        ".gz",
        ".tgz",
        ".tar",
        ".woff",
        ".woff2",
        ".ttf",
        ".otf",
        ".mp3",
        ".mp4",
        ".wav",
        ".docx",
        ".xlsx",
        ".pptx",
        ".bin",
    }
)


def is_binary_path(path: str) -> bool:
    return PurePosixPath(path).suffix.lower() in BINARY_EXTENSIONS


async def gather_or_cancel(aws: Iterable[Awaitable[T]]) -> list[T]:
    """
    Await all concurrently; on the first failure cancel the siblings, wait for
    them to settle and re-raise that failure.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


@dataclass(frozen=True)
class DirEntry:
    name: str
    path: str
    type: str
    sha: str | None = None
    size: int | None = None

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> DirEntry:
        return cls(
            name=str(item.get("name", "")),
            path=str(item.get("path", "")),
            type=str(item.get("type", "")),
            sha=item.get("sha"),
            size=item.get("size"),
        )


@dataclass(frozen=True)
class RemoteFile:
    """A file fetched from a recursive read; binary content is base64 text."""

    path: str
    content: str
    is_binary: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"path": self.path, "content": self.content}
        if self.is_binary:
            payload["encoding"] = "base64"
        return payload


class GitHubContentClient:
    """
    Thin async wrapper over ``/repos/{repo}/contents``.

    Errors are mapped onto the connector taxonomy and never retried here:
    404 -> NotFoundError, 401/403 -> RemoteAuthError (or RateLimitedError when
    the quota is exhausted), 429 -> RateLimitedError, 409/422 on writes ->
    ConflictError, 5xx and transport failures -> RemoteUnavailableError.
    """

    def __init__(
        self,
        repo: str,
        token: str = "",
        *,
        branch: str | None = None,
        base_url: str = DEFAULT_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        if not repo or "/" not in repo:
            raise InvalidError(f"repository must look like 'owner/name', got '{repo}'")
        self.repo = repo
        self.branch = branch
        headers = {"Accept": MEDIA_JSON, "User-Agent": USER_AGENT}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> GitHubContentClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # --- Low-level request plumbing ---
    def _contents_url(self, path: str) -> str:
        return f"/repos/{self.repo}/contents/{quote(path.strip('/'), safe='/')}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        accept: str = MEDIA_JSON,
        body: dict[str, Any] | None = None,
        write: bool = False,
    ) -> httpx.Response:
        params = {"ref": self.branch} if self.branch and not write else None
        try:
            resp = await self._http.request(
                method,
                self._contents_url(path),
                headers={"Accept": accept},
                params=params,
                json=body,
            )
        except httpx.TransportError as exc:
            raise RemoteUnavailableError(
                f"GitHub API unreachable for {path}: {exc}"
            ) from exc
        self._raise_for_status(resp, path, write=write)
        return resp

    @staticmethod
    def _raise_for_status(resp: httpx.Response, path: str, *, write: bool) -> None:
        status = resp.status_code
        if status < 400:
            return
        if status == 404:
            raise NotFoundError(f"File not found: {path}")
        if status == 429 or (
            status == 403 and resp.headers.get("x-ratelimit-remaining") == "0"
        ):
            raise RateLimitedError("GitHub API rate limit exceeded")
        if status in (401, 403):
            raise RemoteAuthError("Rate limited or unauthorized")
        if write and status in (409, 422):
            raise ConflictError(
                f"Version conflict writing {path}: remote content changed"
            )
        if status >= 500:
            raise RemoteUnavailableError(f"GitHub API error: {status}")
        raise RemoteError(f"GitHub API error: {status}")

    # --- Reads ---
    async def read_file(self, path: str) -> str:
        resp = await self._request("GET", path, accept=MEDIA_RAW)
        return resp.content.decode("utf-8", errors="replace")

    async def read_blob(self, path: str) -> tuple[bytes, str]:
        """Content and version tag from one metadata read, so the pair is consistent."""
        resp = await self._request("GET", path)
        data = resp.json()
        if not isinstance(data, dict) or data.get("type", "file") != "file":
            raise InvalidError(f"Not a file: {path}")
        sha = str(data.get("sha", ""))
        content = data.get("content")
        if data.get("encoding") == "base64" and content:
            return base64.b64decode(content), sha
        # Large blobs come back without inline content.
        raw = await self._request("GET", path, accept=MEDIA_RAW)
        return raw.content, sha

    async def read_bytes(self, path: str) -> bytes:
        content, _ = await self.read_blob(path)
        return content

    async def get_file_sha(self, path: str) -> str | None:
        try:
            resp = await self._request("GET", path)
        except NotFoundError:
            return None
        data = resp.json()
        if not isinstance(data, dict):
            return None
        return data.get("sha")

    async def file_exists(self, path: str) -> bool:
        return await self.get_file_sha(path) is not None

    async def list_directory(self, path: str) -> list[DirEntry]:
        resp = await self._request("GET", path)
        data = resp.json()
        if not isinstance(data, list):
            raise InvalidError(f"Not a directory: {path}")
        return [DirEntry.from_api(item) for item in data]

    async def walk_files(self, path: str) -> list[DirEntry]:
        """Every file entry below ``path``; sibling subdirectories are listed concurrently."""
        entries = await self.list_directory(path)
        files = [e for e in entries if e.type == "file"]
        subdirs = [e for e in entries if e.type == "dir"]
        nested = await gather_or_cancel(self.walk_files(d.path) for d in subdirs)
        for chunk in nested:
            files.extend(chunk)
        return files

    async def _fetch_remote_file(self, entry: DirEntry, rel_path: str) -> RemoteFile:
        if is_binary_path(entry.path):
            raw = await self.read_bytes(entry.path)
            return RemoteFile(
                path=rel_path,
                content=base64.b64encode(raw).decode("ascii"),
                is_binary=True,
            )
        return RemoteFile(path=rel_path, content=await self.read_file(entry.path))

    async def read_directory_recursive(self, path: str) -> list[RemoteFile]:
        root = path.strip("/")
        entries = await self.walk_files(root)
        prefix = f"{root}/"
        fetched = await gather_or_cancel(
            self._fetch_remote_file(
                e, e.path[len(prefix) :] if e.path.startswith(prefix) else e.name
            )
            for e in entries
        )
        return sorted(fetched, key=lambda f: f.path)

    # --- Writes ---
    async def write_file(
        self,
        path: str,
        content: str | bytes,
        message: str,
        expected_sha: str | None = None,
    ) -> str:
        """
        Create (``expected_sha`` is None) or update a file and return the new
        blob SHA. Creating over an existing file, or updating with a stale SHA,
        raises ConflictError.
        """
        raw = content.encode("utf-8") if isinstance(content, str) else content
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(raw).decode("ascii"),
        }
        if expected_sha:
            body["sha"] = expected_sha
        if self.branch:
            body["branch"] = self.branch
        resp = await self._request("PUT", path, body=body, write=True)
        data = resp.json()
        return str((data.get("content") or {}).get("sha", ""))

    async def upsert_file(
        self, path: str, content: str | bytes, message: str
    ) -> tuple[str, bool]:
        """Read the current SHA and write against it. Returns (new_sha, created)."""
        sha = await self.get_file_sha(path)
        new_sha = await self.write_file(path, content, message, expected_sha=sha)
        return new_sha, sha is None

    async def delete_file(
        self, path: str, message: str, expected_sha: str | None = None
    ) -> None:
        sha = expected_sha or await self.get_file_sha(path)
        if sha is None:
            raise NotFoundError(f"File not found: {path}")
        body: dict[str, Any] = {"message": message, "sha": sha}
        if self.branch:
            body["branch"] = self.branch
        await self._request("DELETE", path, body=body, write=True)

    async def delete_directory(self, path: str, message: str) -> list[str]:
        """
        Delete every leaf file under ``path`` one by one; the contents API has
        no directory delete. A failure part-way raises PartialFailureError with
        the files already removed; they stay removed.
        """
        entries = await self.walk_files(path)
        deleted: list[str] = []
        for entry in entries:
            try:
                await self.delete_file(entry.path, message, expected_sha=entry.sha)
            except SkillportError as exc:
                logger.error(
                    "Deleting %s stopped at %s after %d of %d files: %s",
                    path,
                    entry.path,
                    len(deleted),
                    len(entries),
                    exc,
                )
                raise PartialFailureError(
                    f"Deleted {len(deleted)} of {len(entries)} files under {path}; "
                    f"failed at {entry.path}: {exc.message}",
                    completed=deleted,
                    failed=[entry.path],
                ) from exc
            deleted.append(entry.path)
        return deleted

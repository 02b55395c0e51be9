from __future__ import annotations

import base64
import hashlib
import json
from typing import Any
from urllib.parse import unquote

import httpx
import pytest

from skillport.access import UserIdentity
from skillport.cache import MemoryKVStore
from skillport.server import build_service
from skillport.service import SkillportService
from skillport.settings import Settings

REPO = "acme/marketplace"
CONNECTOR_URL = "https://connector.test"

EDITOR = UserIdentity(provider="google", uid="editor-1", email="ed@example.com", name="Ed")
READER = UserIdentity(provider="google", uid="reader-1", email="rae@example.com", name="Rae")
OUTSIDER = UserIdentity(provider="google", uid="someone", email="who@example.com")

PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\xff\xfe"


def skill_md(name: str, description: str, body: str = "Instructions.") -> str:
    return f"---\nname: {name}\ndescription: {description}\n---\n\n# {name}\n\n{body}\n"


def blob_sha(data: bytes) -> str:
    return hashlib.sha1(b"blob %d\0" % len(data) + data).hexdigest()


class FakeGitHub:
    """
    In-memory stand-in for the contents API, served through httpx.MockTransport.

    Supports raw and JSON file reads, directory listings, PUT with the sha
    guard (stale sha -> 409, create over an existing file -> 422) and DELETE.
    """

    def __init__(self, repo: str = REPO) -> None:
        self.repo = repo
        self.files: dict[str, bytes] = {}
        self.requests: list[tuple[str, str]] = []
        self.fail_paths: dict[str, int] = {}

    # --- seeding helpers ---
    def put(self, path: str, content: str | bytes | dict[str, Any]) -> None:
        if isinstance(content, dict):
            content = json.dumps(content, indent=2)
        self.files[path] = content.encode("utf-8") if isinstance(content, str) else content

    def json(self, path: str) -> Any:
        return json.loads(self.files[path].decode("utf-8"))

    def text(self, path: str) -> str:
        return self.files[path].decode("utf-8")

    def count(self, method: str, path: str | None = None) -> int:
        return sum(
            1 for m, p in self.requests if m == method and (path is None or p == path)
        )

    @property
    def writes(self) -> list[tuple[str, str]]:
        return [(m, p) for m, p in self.requests if m in ("PUT", "DELETE")]

    # --- transport ---
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        prefix = f"/repos/{self.repo}/contents/"
        url_path = unquote(request.url.path)
        if not url_path.startswith(prefix):
            return httpx.Response(404, json={"message": "Not Found"})
        path = url_path[len(prefix) :].strip("/")
        self.requests.append((request.method, path))

        if path in self.fail_paths:
            return httpx.Response(self.fail_paths[path], json={"message": "boom"})
        if request.method == "GET":
            return self._get(request, path)
        if request.method == "PUT":
            return self._put(json.loads(request.content), path)
        if request.method == "DELETE":
            return self._delete(json.loads(request.content), path)
        return httpx.Response(405)

    def _get(self, request: httpx.Request, path: str) -> httpx.Response:
        if path in self.files:
            data = self.files[path]
            if "raw" in request.headers.get("accept", ""):
                return httpx.Response(200, content=data)
            return httpx.Response(
                200,
                json={
                    "type": "file",
                    "name": path.rsplit("/", 1)[-1],
                    "path": path,
                    "sha": blob_sha(data),
                    "size": len(data),
                    "encoding": "base64",
                    "content": base64.b64encode(data).decode("ascii"),
                },
            )

        children: dict[str, dict[str, Any]] = {}
        dir_prefix = f"{path}/"
        for file_path, data in self.files.items():
            if not file_path.startswith(dir_prefix):
                continue
            rest = file_path[len(dir_prefix) :]
            head = rest.split("/", 1)[0]
            child = f"{dir_prefix}{head}"
            if "/" in rest:
                children.setdefault(head, {"name": head, "path": child, "type": "dir"})
            else:
                children[head] = {
                    "name": head,
                    "path": child,
                    "type": "file",
                    "sha": blob_sha(data),
                    "size": len(data),
                }
        if not children:
            return httpx.Response(404, json={"message": "Not Found"})
        return httpx.Response(200, json=[children[k] for k in sorted(children)])

    def _put(self, body: dict[str, Any], path: str) -> httpx.Response:
        current = self.files.get(path)
        sha = body.get("sha")
        if sha is None and current is not None:
            return httpx.Response(422, json={"message": '"sha" wasn\'t supplied.'})
        if sha is not None and (current is None or blob_sha(current) != sha):
            return httpx.Response(409, json={"message": "sha does not match"})
        data = base64.b64decode(body["content"])
        self.files[path] = data
        return httpx.Response(
            201 if current is None else 200,
            json={"content": {"path": path, "sha": blob_sha(data)}},
        )

    def _delete(self, body: dict[str, Any], path: str) -> httpx.Response:
        current = self.files.get(path)
        if current is None:
            return httpx.Response(404, json={"message": "Not Found"})
        if blob_sha(current) != body.get("sha"):
            return httpx.Response(409, json={"message": "sha does not match"})
        del self.files[path]
        return httpx.Response(200, json={"content": None})


class ManualClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def seed_marketplace(gh: FakeGitHub) -> None:
    gh.put(
        ".claude-plugin/marketplace.json",
        {
            "name": "acme-skills",
            "owner": {"name": "Acme"},
            "plugins": [
                {
                    "name": "data-tools",
                    "source": "./plugins/data-tools",
                    "description": "Tools for tabular data",
                    "version": "1.2.0",
                    "category": "data",
                    "tags": ["csv"],
                }
            ],
        },
    )
    gh.put(
        ".skillport/access.json",
        {
            "version": "1.0",
            "editors": [{"id": "google:editor-1", "label": "ed@example.com"}],
            "skills": {"secret-skill": {"read": [{"id": "google:reader-1"}]}},
            "defaults": {"read": "*", "write": "editors"},
        },
    )
    gh.put(
        "plugins/data-tools/.claude-plugin/plugin.json",
        {
            "name": "data-tools",
            "version": "1.2.0",
            "description": "Tools for tabular data",
            "author": {"name": "Acme", "email": "dev@acme.test"},
        },
    )
    gh.put(
        "plugins/data-tools/skills/csv-cleaner/SKILL.md",
        skill_md("csv-cleaner", "Clean messy CSV files"),
    )
    gh.put("plugins/data-tools/skills/csv-cleaner/scripts/clean.py", "print('clean')\n")
    gh.put("plugins/data-tools/skills/csv-cleaner/assets/logo.png", PNG_BYTES)
    gh.put(
        "plugins/data-tools/skills/chart-maker/SKILL.md",
        skill_md("chart-maker", "Draw charts from tables"),
    )
    gh.put(
        "plugins/private/.claude-plugin/plugin.json",
        {"name": "private", "version": "0.3.0", "description": "Internal"},
    )
    gh.put(
        "plugins/private/skills/secret-skill/SKILL.md",
        skill_md("secret-skill", "Only for the chosen"),
    )


@pytest.fixture
def github() -> FakeGitHub:
    gh = FakeGitHub()
    seed_marketplace(gh)
    return gh


@pytest.fixture
def empty_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store(clock: ManualClock) -> MemoryKVStore:
    return MemoryKVStore(clock=clock)


def make_service(gh: FakeGitHub, store: MemoryKVStore) -> SkillportService:
    settings = Settings(repo=gh.repo, read_token="read-token", connector_url=CONNECTOR_URL)
    return build_service(settings, store=store, transport=gh.transport())


@pytest.fixture
def service(github: FakeGitHub, store: MemoryKVStore) -> SkillportService:
    return make_service(github, store)

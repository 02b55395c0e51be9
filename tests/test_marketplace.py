from __future__ import annotations

import pytest

from conftest import FakeGitHub, skill_md
from skillport.cache import MemoryKVStore, TTLCache
from skillport.errors import InvalidError
from skillport.github_client import GitHubContentClient
from skillport.marketplace import Marketplace


def _marketplace(gh: FakeGitHub, store: MemoryKVStore) -> Marketplace:
    client = GitHubContentClient(gh.repo, "tok", transport=gh.transport())
    return Marketplace(client, TTLCache(store))


@pytest.mark.asyncio
async def test_index_merges_manifest_registry_and_declaration(
    github: FakeGitHub, store: MemoryKVStore
) -> None:
    skills = {s.name: s for s in await _marketplace(github, store).list_skills()}
    assert set(skills) == {"csv-cleaner", "chart-maker", "secret-skill"}

    csv = skills["csv-cleaner"]
    assert csv.package == "data-tools"
    assert csv.dir_name == "csv-cleaner"
    assert csv.description == "Clean messy CSV files"
    assert csv.version == "1.2.0"
    assert csv.author == {"name": "Acme", "email": "dev@acme.test"}
    assert csv.category == "data"
    assert csv.tags == ["csv"]
    assert csv.published is True
    assert csv.path == "plugins/data-tools/skills/csv-cleaner"

    secret = skills["secret-skill"]
    assert secret.version == "0.3.0"
    assert secret.published is False
    assert secret.category is None


@pytest.mark.asyncio
async def test_duplicate_names_keep_first_package(github: FakeGitHub, store: MemoryKVStore) -> None:
    github.put("plugins/zz-extra/.claude-plugin/plugin.json", {"name": "zz-extra"})
    github.put(
        "plugins/zz-extra/skills/another/SKILL.md", skill_md("csv-cleaner", "Impostor")
    )
    skills = [s for s in await _marketplace(github, store).list_skills() if s.name == "csv-cleaner"]
    assert len(skills) == 1
    assert skills[0].package == "data-tools"


@pytest.mark.asyncio
async def test_broken_packages_and_declarations_are_skipped(
    github: FakeGitHub, store: MemoryKVStore
) -> None:
    github.put("plugins/orphan/skills/lonely/SKILL.md", skill_md("lonely", "No manifest"))
    github.put("plugins/broken/.claude-plugin/plugin.json", "{not json")
    github.put("plugins/broken/skills/b/SKILL.md", skill_md("b", "Bad manifest"))
    github.put("plugins/data-tools/skills/garbled/SKILL.md", "no header here")

    names = {s.name for s in await _marketplace(github, store).list_skills()}
    assert names == {"csv-cleaner", "chart-maker", "secret-skill"}


@pytest.mark.asyncio
async def test_missing_registry_and_policy(empty_github: FakeGitHub, store: MemoryKVStore) -> None:
    empty_github.put("plugins/solo/.claude-plugin/plugin.json", {"name": "solo"})
    empty_github.put("plugins/solo/skills/solo/SKILL.md", skill_md("solo", "Alone"))
    market = _marketplace(empty_github, store)

    skills = await market.list_skills()
    assert [(s.name, s.version, s.published) for s in skills] == [("solo", "1.0.0", False)]
    assert (await market.get_registry()).plugins == []
    policy = await market.get_access_policy()
    assert policy.default_read == "*"


@pytest.mark.asyncio
async def test_empty_repository_lists_nothing(empty_github: FakeGitHub, store: MemoryKVStore) -> None:
    assert await _marketplace(empty_github, store).list_skills() == []


@pytest.mark.asyncio
async def test_catalog_is_served_from_cache(github: FakeGitHub, store: MemoryKVStore) -> None:
    market = _marketplace(github, store)
    await market.list_skills()
    before = len(github.requests)
    await market.list_skills()
    await market.get_skill("csv-cleaner")
    assert len(github.requests) == before


@pytest.mark.asyncio
async def test_skill_files_cached_per_version(github: FakeGitHub, store: MemoryKVStore) -> None:
    market = _marketplace(github, store)
    skill = await market.get_skill("csv-cleaner")
    files = await market.fetch_skill_files(skill)
    assert {f["path"] for f in files} == {"SKILL.md", "scripts/clean.py", "assets/logo.png"}

    before = len(github.requests)
    await market.fetch_skill_files(skill)
    assert len(github.requests) == before

    skill.version = "1.3.0"
    await market.fetch_skill_files(skill)
    assert len(github.requests) > before


@pytest.mark.asyncio
async def test_count_skill_directories(github: FakeGitHub, store: MemoryKVStore) -> None:
    market = _marketplace(github, store)
    assert await market.count_skill_directories("data-tools") == 2
    assert await market.count_skill_directories("private") == 1
    assert await market.count_skill_directories("missing") == 0


@pytest.mark.asyncio
async def test_bump_manifest_version_reads_the_current_blob(
    github: FakeGitHub, store: MemoryKVStore
) -> None:
    marketplace = _marketplace(github, store)
    assert (await marketplace.get_manifest("data-tools")).version == "1.2.0"
    manifest = github.json("plugins/data-tools/.claude-plugin/plugin.json")
    github.put("plugins/data-tools/.claude-plugin/plugin.json", {**manifest, "version": "2.0.0"})

    assert await marketplace.bump_manifest_version("data-tools", "minor", "1.0.0", "ed") == (
        "2.0.0",
        "2.1.0",
    )
    written = github.json("plugins/data-tools/.claude-plugin/plugin.json")
    assert written["version"] == "2.1.0"
    assert written["author"] == {"name": "Acme", "email": "dev@acme.test"}


@pytest.mark.asyncio
async def test_bump_manifest_version_uses_fallback_without_version(
    github: FakeGitHub, store: MemoryKVStore
) -> None:
    github.put("plugins/data-tools/.claude-plugin/plugin.json", {"name": "data-tools"})
    marketplace = _marketplace(github, store)
    assert await marketplace.bump_manifest_version("data-tools", "patch", "1.2.0", "ed") == (
        "1.2.0",
        "1.2.1",
    )


@pytest.mark.asyncio
async def test_non_utf8_documents_are_invalid_on_write(
    github: FakeGitHub, store: MemoryKVStore
) -> None:
    marketplace = _marketplace(github, store)
    github.put(".claude-plugin/marketplace.json", b'{"plugins": ["\xff\xfe"]}')
    github.put("plugins/data-tools/.claude-plugin/plugin.json", b'{"name": "\xff"}')

    with pytest.raises(InvalidError, match="UTF-8"):
        await marketplace.update_registry_version("data-tools", "1.3.0", "bump")
    with pytest.raises(InvalidError, match="UTF-8"):
        await marketplace.bump_manifest_version("data-tools", "patch", "1.0.0", "ed")
    assert github.writes == []

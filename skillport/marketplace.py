"""
skillport.marketplace

Cached read model of the marketplace repository (registry, manifests, access
policy, skill catalog, skill file trees) plus the registry and manifest
writes that mutations need. Reads go through the TTL cache; writes go to the
remote store directly and the caller invalidates afterwards.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from skillport.access import DEFAULT_ACCESS_POLICY, AccessPolicy
from skillport.cache import CacheKeys, TTLCache
from skillport.errors import ConflictError, InvalidError, NotFoundError
from skillport.github_client import GitHubContentClient
from skillport.metadata import (
    Author,
    Manifest,
    Registry,
    RegistryEntry,
    bump_version,
    declaration_fields,
)
from skillport.settings import (
    ACCESS_POLICY_PATH,
    ACCESS_POLICY_TTL,
    CATALOG_TTL,
    DEFAULT_VERSION,
    MANIFEST_TTL,
    PACKAGES_ROOT,
    REGISTRY_PATH,
    REGISTRY_TTL,
    SKILL_FILES_TTL,
    SKILLS_DIRNAME,
    declaration_path,
    manifest_path,
    package_path,
    skill_dir_path,
)

logger = logging.getLogger(__name__)


@dataclass
class Skill:
    name: str
    dir_name: str
    package: str
    description: str
    version: str = DEFAULT_VERSION
    author: dict[str, Any] | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    published: bool = False

    @property
    def path(self) -> str:
        return skill_dir_path(self.package, self.dir_name)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Skill:
        return cls(**data)


def _loads(text: str, what: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidError(f"{what} is not valid JSON: {exc}") from exc


def _loads_blob(raw: bytes, what: str) -> Any:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidError(f"{what} must be UTF-8 text") from exc
    return _loads(text, what)


def _dumps(data: dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


class Marketplace:
    def __init__(
        self,
        reader: GitHubContentClient,
        cache: TTLCache,
        writer: GitHubContentClient | None = None,
    ) -> None:
        self.reader = reader
        self.writer = writer or reader
        self.cache = cache
        self.keys = CacheKeys(reader.repo)

    # --- Cached reads ---
    async def get_registry(self) -> Registry:
        async def fetch() -> dict[str, Any]:
            return _loads(await self.reader.read_file(REGISTRY_PATH), REGISTRY_PATH)

        try:
            data = await self.cache.get_or_fetch(self.keys.registry(), REGISTRY_TTL, fetch)
        except NotFoundError:
            return Registry(name=self.reader.repo.split("/")[-1])
        return Registry.from_dict(data)

    async def get_access_policy(self) -> AccessPolicy:
        async def fetch() -> dict[str, Any]:
            return _loads(await self.reader.read_file(ACCESS_POLICY_PATH), ACCESS_POLICY_PATH)

        try:
            data = await self.cache.get_or_fetch(
                self.keys.access_policy(), ACCESS_POLICY_TTL, fetch
            )
        except NotFoundError:
            return DEFAULT_ACCESS_POLICY
        return AccessPolicy.from_dict(data)

    async def get_manifest(self, package: str) -> Manifest | None:
        """None when the package has no manifest; InvalidError when it is malformed."""
        path = manifest_path(package)

        async def fetch() -> dict[str, Any]:
            return _loads(await self.reader.read_file(path), path)

        try:
            data = await self.cache.get_or_fetch(self.keys.manifest(package), MANIFEST_TTL, fetch)
        except NotFoundError:
            return None
        return Manifest.from_dict(data, fallback_name=package)

    async def fetch_skill_md(self, package: str, dir_name: str) -> str:
        path = declaration_path(package, dir_name)

        async def fetch() -> str:
            return await self.reader.read_file(path)

        return await self.cache.get_or_fetch(
            self.keys.skill_md(package, dir_name), MANIFEST_TTL, fetch
        )

    async def list_skills(self) -> list[Skill]:
        async def fetch() -> list[dict[str, Any]]:
            return [s.to_dict() for s in await self._build_index()]

        data = await self.cache.get_or_fetch(self.keys.skill_catalog(), CATALOG_TTL, fetch)
        return [Skill.from_dict(item) for item in data]

    async def get_skill(self, name: str) -> Skill | None:
        for skill in await self.list_skills():
            if skill.name == name:
                return skill
        return None

    async def fetch_skill_files(self, skill: Skill) -> list[dict[str, Any]]:
        """Whole file tree of a skill, cached under its version."""

        async def fetch() -> list[dict[str, Any]]:
            files = await self.reader.read_directory_recursive(skill.path)
            return [f.to_dict() for f in files]

        return await self.cache.get_or_fetch(
            self.keys.skill_files(skill.package, skill.dir_name, skill.version),
            SKILL_FILES_TTL,
            fetch,
        )

    async def count_skill_directories(self, package: str) -> int:
        """Structural count; declaration files need not be valid."""
        try:
            entries = await self.reader.list_directory(
                f"{package_path(package)}/{SKILLS_DIRNAME}"
            )
        except NotFoundError:
            return 0
        return sum(1 for e in entries if e.type == "dir")

    # --- Index build ---
    async def _build_index(self) -> list[Skill]:
        """
        Walk package directories, keep the ones with a readable manifest, and
        read each skill's declaration header. Directories are visited in
        lexicographic order so the first-wins rule on duplicate display names
        does not depend on the listing order of the remote store.
        """
        registry = await self.get_registry()
        try:
            entries = await self.reader.list_directory(PACKAGES_ROOT)
        except NotFoundError:
            logger.info("No %s/ directory in %s", PACKAGES_ROOT, self.reader.repo)
            return []

        catalog: dict[str, Skill] = {}
        for package in sorted(e.name for e in entries if e.type == "dir"):
            try:
                manifest = await self.get_manifest(package)
            except InvalidError as exc:
                logger.warning("Skipping package %s: %s", package, exc)
                continue
            if manifest is None:
                logger.debug("Skipping %s: no manifest", package)
                continue

            try:
                skill_entries = await self.reader.list_directory(
                    f"{package_path(package)}/{SKILLS_DIRNAME}"
                )
            except NotFoundError:
                continue

            entry = registry.find_by_package(package)
            for dir_name in sorted(e.name for e in skill_entries if e.type == "dir"):
                try:
                    name, description = declaration_fields(
                        await self.fetch_skill_md(package, dir_name)
                    )
                except (NotFoundError, InvalidError) as exc:
                    logger.warning("Skipping skill %s/%s: %s", package, dir_name, exc)
                    continue

                display_name = name or dir_name
                if display_name in catalog:
                    kept = catalog[display_name]
                    logger.warning(
                        "Duplicate skill name '%s' in %s/%s; keeping %s/%s",
                        display_name,
                        package,
                        dir_name,
                        kept.package,
                        kept.dir_name,
                    )
                    continue
                catalog[display_name] = self._make_skill(
                    display_name, dir_name, package, description, manifest, entry
                )
        return list(catalog.values())

    @staticmethod
    def _make_skill(
        name: str,
        dir_name: str,
        package: str,
        description: str | None,
        manifest: Manifest,
        entry: RegistryEntry | None,
    ) -> Skill:
        author: Author | None = manifest.author or (entry.author if entry else None)
        return Skill(
            name=name,
            dir_name=dir_name,
            package=package,
            description=description
            or (entry.description if entry else None)
            or manifest.description
            or "",
            version=manifest.version
            or (entry.version if entry else None)
            or DEFAULT_VERSION,
            author=author.to_dict() if author else None,
            category=entry.category if entry else None,
            tags=list(entry.tags) if entry else [],
            keywords=list(entry.keywords if entry and entry.keywords else manifest.keywords),
            published=entry is not None,
        )

    # --- Writes (uncached, read-modify-write against the current tag) ---
    async def _read_registry_for_update(self) -> tuple[Registry, str | None]:
        try:
            raw, sha = await self.writer.read_blob(REGISTRY_PATH)
        except NotFoundError:
            return Registry(name=self.writer.repo.split("/")[-1]), None
        data = _loads_blob(raw, REGISTRY_PATH)
        return Registry.from_dict(data), sha

    async def add_to_registry(self, entry: RegistryEntry, message: str) -> None:
        registry, sha = await self._read_registry_for_update()
        if registry.find(entry.name) is not None:
            raise ConflictError(f"'{entry.name}' is already published in the marketplace")
        registry.plugins.append(entry)
        await self.writer.write_file(REGISTRY_PATH, _dumps(registry.to_dict()), message, sha)

    async def remove_from_registry(self, package: str, message: str) -> None:
        registry, sha = await self._read_registry_for_update()
        entry = registry.find_by_package(package)
        if sha is None or entry is None:
            raise NotFoundError(f"'{package}' not found in marketplace")
        registry.plugins = [p for p in registry.plugins if p is not entry]
        await self.writer.write_file(REGISTRY_PATH, _dumps(registry.to_dict()), message, sha)

    async def update_registry_version(self, name: str, version: str, message: str) -> None:
        registry, sha = await self._read_registry_for_update()
        entry = registry.find(name)
        if sha is None or entry is None:
            raise NotFoundError(f"'{name}' not found in marketplace")
        entry.version = version
        await self.writer.write_file(REGISTRY_PATH, _dumps(registry.to_dict()), message, sha)

    async def create_manifest(self, manifest: Manifest, message: str) -> None:
        await self.writer.write_file(
            manifest_path(manifest.name), _dumps(manifest.to_dict()), message
        )

    async def bump_manifest_version(
        self, package: str, kind: str, fallback: str, requested_by: str
    ) -> tuple[str, str]:
        """
        Bump the version recorded in the package manifest and return
        (old_version, new_version).

        Both versions come from the blob read for the write, never from the
        cache, so a concurrent bump is built on rather than overwritten.
        `fallback` stands in when the manifest carries no version.
        """
        path = manifest_path(package)
        raw, sha = await self.writer.read_blob(path)
        manifest = Manifest.from_dict(_loads_blob(raw, path), fallback_name=package)
        current = manifest.version or fallback
        new_version = bump_version(current, kind)
        manifest.version = new_version
        message = f"Bump {package} version to {new_version}\n\nRequested by: {requested_by}"
        await self.writer.write_file(path, _dumps(manifest.to_dict()), message, sha)
        return current, new_version

    # --- Invalidation ---
    async def invalidate_registry(self) -> None:
        await self.cache.delete(self.keys.registry())
        await self.cache.delete(self.keys.skill_catalog())

    async def invalidate_package(self, package: str) -> None:
        await self.cache.delete(self.keys.manifest(package))
        await self.cache.delete(self.keys.skill_catalog())

    async def invalidate_skill(self, package: str, dir_name: str) -> None:
        await self.cache.delete(self.keys.skill_md(package, dir_name))
        await self.cache.delete_by_prefix(self.keys.skill_files_prefix(package, dir_name))
        await self.cache.delete(self.keys.skill_catalog())

    async def invalidate_all(self) -> None:
        for prefix in ("registry:", "access:", "catalog:", "manifest:", "skillmd:", "skillfiles:"):
            await self.cache.delete_by_prefix(f"{prefix}{self.reader.repo}")

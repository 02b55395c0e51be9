"""
skillport.metadata

Typed views over the JSON and YAML documents stored in the marketplace:
package manifests, the registry (published packages), and the declaration
header of each SKILL.md. Also semantic-version parsing, ordering and bumping.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

import yaml

from skillport.errors import InvalidError


# --- Documents ---
@dataclass
class Author:
    name: str
    email: str | None = None

    @classmethod
    def from_value(cls, value: Any) -> Author | None:
        if isinstance(value, str) and value:
            return cls(name=value)
        if isinstance(value, dict) and value.get("name"):
            email = value.get("email")
            return cls(name=str(value["name"]), email=str(email) if email else None)
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name}
        if self.email:
            data["email"] = self.email
        return data


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, (str, int, float))]


def _opt_str(value: Any) -> str | None:
    return str(value) if isinstance(value, (str, int, float)) and str(value) else None


@dataclass
class Manifest:
    """Package manifest (``.claude-plugin/plugin.json``), schema v1."""

    name: str
    version: str | None = None
    description: str | None = None
    author: Author | None = None
    license: str | None = None
    homepage: str | None = None
    keywords: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = ("name", "version", "description", "author", "license", "homepage", "keywords")

    @classmethod
    def from_dict(cls, data: Any, fallback_name: str = "") -> Manifest:
        if not isinstance(data, dict):
            raise InvalidError("manifest must be a JSON object")
        return cls(
            name=_opt_str(data.get("name")) or fallback_name,
            version=_opt_str(data.get("version")),
            description=_opt_str(data.get("description")),
            author=Author.from_value(data.get("author")),
            license=_opt_str(data.get("license")),
            homepage=_opt_str(data.get("homepage")),
            keywords=_str_list(data.get("keywords")),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN},
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name}
        if self.version is not None:
            data["version"] = self.version
        if self.description is not None:
            data["description"] = self.description
        if self.author is not None:
            data["author"] = self.author.to_dict()
        if self.license is not None:
            data["license"] = self.license
        if self.homepage is not None:
            data["homepage"] = self.homepage
        data["keywords"] = list(self.keywords)
        data.update(self.extra)
        return data


@dataclass
class RegistryEntry:
    """One published package in the registry, schema v1."""

    name: str
    source: str
    description: str | None = None
    version: str | None = None
    author: Author | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = ("name", "source", "description", "version", "author", "category", "tags", "keywords")

    @classmethod
    def from_dict(cls, data: Any) -> RegistryEntry:
        if not isinstance(data, dict) or not _opt_str(data.get("name")):
            raise InvalidError("registry entry must be an object with a name")
        name = str(data["name"])
        return cls(
            name=name,
            source=_opt_str(data.get("source")) or f"./plugins/{name}",
            description=_opt_str(data.get("description")),
            version=_opt_str(data.get("version")),
            author=Author.from_value(data.get("author")),
            category=_opt_str(data.get("category")),
            tags=_str_list(data.get("tags")),
            keywords=_str_list(data.get("keywords")),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN},
        )

    @property
    def base_path(self) -> str:
        """Source path relative to the repository root, without ``./``."""
        source = self.source
        if source.startswith("./"):
            source = source[2:]
        return source.strip("/")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "source": self.source}
        if self.description is not None:
            data["description"] = self.description
        if self.version is not None:
            data["version"] = self.version
        if self.author is not None:
            data["author"] = self.author.to_dict()
        if self.category is not None:
            data["category"] = self.category
        if self.tags:
            data["tags"] = list(self.tags)
        if self.keywords:
            data["keywords"] = list(self.keywords)
        data.update(self.extra)
        return data


@dataclass
class Registry:
    """The marketplace document; unknown top-level keys survive a rewrite."""

    name: str
    plugins: list[RegistryEntry] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> Registry:
        if not isinstance(data, dict):
            raise InvalidError("registry must be a JSON object")
        raw_plugins = data.get("plugins") or []
        if not isinstance(raw_plugins, list):
            raise InvalidError("registry 'plugins' must be a list")
        return cls(
            name=_opt_str(data.get("name")) or "marketplace",
            plugins=[RegistryEntry.from_dict(p) for p in raw_plugins],
            extra={k: v for k, v in data.items() if k not in ("name", "plugins")},
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name}
        data.update(self.extra)
        data["plugins"] = [p.to_dict() for p in self.plugins]
        return data

    def find(self, name: str) -> RegistryEntry | None:
        for entry in self.plugins:
            if entry.name == name:
                return entry
        return None

    def find_by_package(self, package: str) -> RegistryEntry | None:
        """Match on the source directory first, then on the entry name."""
        for entry in self.plugins:
            if entry.base_path.split("/")[-1] == package:
                return entry
        return self.find(package)


# --- Declaration header ---
def parse_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """
    Parse the header block of a SKILL.md: YAML between two ``---`` lines,
    followed by the markdown body. Returns (fields, body).
    """
    lines = text.splitlines(keepends=False)
    if not lines or lines[0].strip() != "---":
        raise InvalidError("SKILL.md must begin with a '---' line for YAML frontmatter")

    fm_lines: list[str] = []
    idx = 1
    while idx < len(lines) and lines[idx].strip() != "---":
        fm_lines.append(lines[idx])
        idx += 1

    if idx >= len(lines):
        raise InvalidError("YAML frontmatter must end with a '---' line")

    try:
        fm = yaml.safe_load("\n".join(fm_lines)) or {}
    except yaml.YAMLError as exc:
        raise InvalidError(f"invalid YAML frontmatter: {exc}") from exc
    if not isinstance(fm, dict):
        raise InvalidError("YAML frontmatter must parse to a mapping")
    return fm, "\n".join(lines[idx + 1 :])


def declaration_fields(text: str) -> tuple[str | None, str | None]:
    """(name, description) from a declaration header; blank values become None."""
    fm, _ = parse_frontmatter(text)
    name = fm.get("name")
    description = fm.get("description")
    name = str(name).strip() if name is not None else ""
    description = str(description).strip() if description is not None else ""
    return name or None, description or None


# --- Semantic versions ---
_VERSION_RE = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$")

BUMP_KINDS = ("major", "minor", "patch")


def parse_version(version: str) -> tuple[int, int, int, str | None]:
    match = _VERSION_RE.match((version or "").strip())
    if not match:
        raise InvalidError(f"invalid version string: '{version}'")
    major, minor, patch, pre = match.groups()
    return int(major), int(minor or 0), int(patch or 0), pre


def compare_versions(a: str, b: str) -> int:
    """
    -1, 0 or 1. Numeric triples compare first; a prerelease sorts below the
    same triple without one; two prereleases compare as plain strings.
    """
    *core_a, pre_a = parse_version(a)
    *core_b, pre_b = parse_version(b)
    if core_a != core_b:
        return -1 if core_a < core_b else 1
    if pre_a == pre_b:
        return 0
    if pre_a is None:
        return 1
    if pre_b is None:
        return -1
    return -1 if pre_a < pre_b else 1


def is_update_available(installed: str, available: str) -> bool:
    return compare_versions(available, installed) > 0


def bump_version(version: str, kind: str) -> str:
    """Bump one field and zero everything below it; a prerelease tag is dropped."""
    if kind not in BUMP_KINDS:
        raise InvalidError(f"bump type must be one of {', '.join(BUMP_KINDS)}")
    major, minor, patch, _ = parse_version(version)
    if kind == "major":
        return f"{major + 1}.0.0"
    if kind == "minor":
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{patch + 1}"

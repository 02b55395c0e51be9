"""
skillport.access

Per-skill access control evaluated against the repository's access policy
document (``.skillport/access.json``). Users are keyed by ``provider:uid``;
email and display name are informational only.

Policy document shape::

    {
      "version": "1.0",
      "editors": [{"id": "google:123", "label": "ann@example.com"}],
      "skills": {"data-tools": {"read": "*", "write": "editors"}},
      "defaults": {"read": "*", "write": "editors"}
    }

``read`` is ``"*"`` or a list of users; ``write`` is ``"editors"`` or a list.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from skillport.errors import InvalidError

WILDCARD = "*"
EDITORS = "editors"

# A rule is either a sentinel string or a frozenset of user ids.
Rule = str | frozenset[str]


@dataclass(frozen=True)
class UserIdentity:
    """Resolved identity handed over by the identity provider collaborator."""

    provider: str
    uid: str
    email: str = ""
    name: str = ""

    @property
    def id(self) -> str:
        return f"{self.provider}:{self.uid}"

    @property
    def label(self) -> str:
        return self.email or self.name or self.id

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "provider": self.provider,
        }


def _user_ids(value: Any, where: str) -> frozenset[str]:
    ids: set[str] = set()
    for item in value:
        if isinstance(item, dict) and item.get("id"):
            ids.add(str(item["id"]))
        elif isinstance(item, str) and item:
            ids.add(item)
        else:
            raise InvalidError(f"access policy: malformed user reference in {where}")
    return frozenset(ids)


def _parse_rule(value: Any, sentinel: str, where: str) -> Rule | None:
    if value is None:
        return None
    if value == sentinel:
        return sentinel
    if isinstance(value, list):
        return _user_ids(value, where)
    raise InvalidError(f"access policy: {where} must be '{sentinel}' or a list of users")


@dataclass(frozen=True)
class SkillRule:
    read: Rule | None = None
    write: Rule | None = None


@dataclass(frozen=True)
class AccessPolicy:
    editors: frozenset[str] = frozenset()
    skills: dict[str, SkillRule] = field(default_factory=dict)
    default_read: Rule = WILDCARD
    default_write: Rule = EDITORS
    version: str = "1.0"

    @classmethod
    def from_dict(cls, data: Any) -> AccessPolicy:
        if not isinstance(data, dict):
            raise InvalidError("access policy must be a JSON object")
        editors = _user_ids(data.get("editors") or [], "editors")

        skills: dict[str, SkillRule] = {}
        raw_skills = data.get("skills") or {}
        if not isinstance(raw_skills, dict):
            raise InvalidError("access policy: 'skills' must be an object")
        for name, rule in raw_skills.items():
            if not isinstance(rule, dict):
                raise InvalidError(f"access policy: rule for '{name}' must be an object")
            skills[str(name)] = SkillRule(
                read=_parse_rule(rule.get("read"), WILDCARD, f"skills.{name}.read"),
                write=_parse_rule(rule.get("write"), EDITORS, f"skills.{name}.write"),
            )

        defaults = data.get("defaults") or {}
        default_read = _parse_rule(defaults.get("read"), WILDCARD, "defaults.read")
        default_write = _parse_rule(defaults.get("write"), EDITORS, "defaults.write")
        return cls(
            editors=editors,
            skills=skills,
            default_read=WILDCARD if default_read is None else default_read,
            default_write=EDITORS if default_write is None else default_write,
            version=str(data.get("version") or "1.0"),
        )


# Used when the policy document does not exist: everyone reads, nobody writes.
DEFAULT_ACCESS_POLICY = AccessPolicy()


class AccessControl:
    """Pure evaluator over one policy snapshot and one identity."""

    def __init__(self, policy: AccessPolicy, identity: UserIdentity) -> None:
        self.policy = policy
        self.identity = identity

    @property
    def user_id(self) -> str:
        return self.identity.id

    def is_editor(self) -> bool:
        return self.user_id in self.policy.editors

    def can_read(self, name: str) -> bool:
        rule = self.policy.skills.get(name)
        if rule is not None and rule.read is not None:
            return rule.read == WILDCARD or self._member(rule.read)
        read = self.policy.default_read
        return read == WILDCARD or self._member(read)

    def can_write(self, name: str) -> bool:
        rule = self.policy.skills.get(name)
        if rule is not None and rule.write is not None:
            return self.is_editor() if rule.write == EDITORS else self._member(rule.write)
        write = self.policy.default_write
        if write == EDITORS:
            return self.is_editor()
        return self._member(write)

    def _member(self, rule: Rule) -> bool:
        return isinstance(rule, frozenset) and self.user_id in rule

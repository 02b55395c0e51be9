from __future__ import annotations

import pytest

from conftest import EDITOR, OUTSIDER, READER
from skillport.access import DEFAULT_ACCESS_POLICY, AccessControl, AccessPolicy, UserIdentity
from skillport.errors import InvalidError

POLICY = AccessPolicy.from_dict(
    {
        "version": "1.0",
        "editors": [{"id": "google:editor-1", "label": "ed@example.com"}],
        "skills": {
            "secret-skill": {"read": [{"id": "google:reader-1"}]},
            "shared-skill": {"write": [{"id": "google:reader-1"}]},
            "locked-skill": {"read": [], "write": []},
        },
        "defaults": {"read": "*", "write": "editors"},
    }
)


def test_identity_id_and_label() -> None:
    assert EDITOR.id == "google:editor-1"
    assert UserIdentity(provider="github", uid="42").label == "github:42"
    assert READER.to_dict()["email"] == "rae@example.com"


def test_default_policy_everyone_reads_nobody_writes() -> None:
    access = AccessControl(DEFAULT_ACCESS_POLICY, EDITOR)
    assert access.can_read("anything")
    assert not access.can_write("anything")
    assert not access.is_editor()


def test_defaults_apply_without_override() -> None:
    assert AccessControl(POLICY, OUTSIDER).can_read("csv-cleaner")
    assert not AccessControl(POLICY, OUTSIDER).can_write("csv-cleaner")
    assert AccessControl(POLICY, EDITOR).can_write("csv-cleaner")


def test_read_override_replaces_default() -> None:
    assert AccessControl(POLICY, READER).can_read("secret-skill")
    assert not AccessControl(POLICY, OUTSIDER).can_read("secret-skill")
    # Editors are not implicitly readers of a restricted skill.
    assert not AccessControl(POLICY, EDITOR).can_read("secret-skill")


def test_write_override_replaces_default() -> None:
    assert AccessControl(POLICY, READER).can_write("shared-skill")
    assert not AccessControl(POLICY, EDITOR).can_write("shared-skill")
    # Missing read in the override falls back to the default.
    assert AccessControl(POLICY, OUTSIDER).can_read("shared-skill")


def test_empty_lists_deny_everyone() -> None:
    for user in (EDITOR, READER, OUTSIDER):
        access = AccessControl(POLICY, user)
        assert not access.can_read("locked-skill")
        assert not access.can_write("locked-skill")


def test_users_are_matched_by_id_not_email() -> None:
    impostor = UserIdentity(provider="github", uid="editor-1", email="ed@example.com")
    assert not AccessControl(POLICY, impostor).is_editor()


@pytest.mark.parametrize(
    "doc",
    [
        [],
        {"skills": "all"},
        {"skills": {"x": {"read": "everyone"}}},
        {"editors": [42]},
        {"defaults": {"write": "*"}},
    ],
)
def test_malformed_policy_is_invalid(doc) -> None:
    with pytest.raises(InvalidError):
        AccessPolicy.from_dict(doc)


def test_editor_override_beats_restrictive_default() -> None:
    policy = AccessPolicy.from_dict(
        {
            "editors": [{"id": "google:editor-1"}],
            "skills": {"csv-cleaner": {"write": "editors"}},
            "defaults": {"read": "*", "write": [{"id": "google:reader-1"}]},
        }
    )
    assert AccessControl(policy, EDITOR).can_write("csv-cleaner")
    assert not AccessControl(policy, READER).can_write("csv-cleaner")
    assert not AccessControl(policy, EDITOR).can_write("chart-maker")
    assert AccessControl(policy, READER).can_write("chart-maker")

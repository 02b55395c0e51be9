"""
skillport.service

The operations exposed to tool callers. Every operation takes the verified
identity of the caller, loads a fresh (cached) access-policy snapshot, and
either returns a JSON-ready payload or raises a SkillportError.

Multi-step mutations are not rolled back. A save stops at the first failing
file and reports what was already written; delete and version bump report
which of their steps completed.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any

from skillport.access import AccessControl, UserIdentity
from skillport.errors import (
    InvalidError,
    NotFoundError,
    PartialFailureError,
    SkillportError,
    UnauthorizedError,
)
from skillport.github_client import GitHubContentClient
from skillport.marketplace import Marketplace, Skill
from skillport.metadata import (
    Author,
    Manifest,
    RegistryEntry,
    bump_version,
    declaration_fields,
    is_update_available,
)
from skillport.settings import (
    DECLARATION_NAME,
    DEFAULT_VERSION,
    declaration_path,
    manifest_path,
    package_path,
    skill_dir_path,
)
from skillport.tokens import TokenKind, TokenService

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("skillport.audit")


def validate_file_path(file_path: str) -> str | None:
    """Normalised relative path, or None for empty, absolute or traversing paths."""
    if not isinstance(file_path, str) or not file_path.strip():
        return None
    if file_path.startswith("/") or file_path.startswith("\\"):
        return None
    normalized: list[str] = []
    for segment in file_path.replace("\\", "/").split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            return None
        normalized.append(segment)
    if not normalized:
        return None
    return "/".join(normalized)


def validate_name(name: str) -> bool:
    if not name or any(not (ch.isalnum() or ch in "-_") for ch in name):
        return False
    return not (name.startswith("-") or name.endswith("-"))


@dataclass
class FileChange:
    path: str
    data: bytes | None  # None means delete

    @property
    def is_declaration(self) -> bool:
        return self.path == DECLARATION_NAME


class SkillportService:
    def __init__(
        self,
        marketplace: Marketplace,
        tokens: TokenService,
        connector_url: str,
    ) -> None:
        self.marketplace = marketplace
        self.tokens = tokens
        self.connector_url = connector_url.rstrip("/")

    # --- helpers ---
    @staticmethod
    def _audit(user: UserIdentity, action: str, **fields: str | None) -> None:
        extra = "".join(f" {k}={v}" for k, v in fields.items() if v)
        audit_logger.info("[AUDIT] user=%s action=%s%s", user.label, action, extra)

    async def _access(self, user: UserIdentity) -> AccessControl:
        return AccessControl(await self.marketplace.get_access_policy(), user)

    async def _require_skill(self, name: str) -> Skill:
        skill = await self.marketplace.get_skill(name)
        if skill is None:
            raise NotFoundError(f"Skill '{name}' not found")
        return skill

    @staticmethod
    def _require_read(access: AccessControl, name: str) -> None:
        if not access.can_read(name):
            raise UnauthorizedError(f"You don't have access to skill '{name}'")

    @staticmethod
    def _require_write(access: AccessControl, name: str) -> None:
        if not access.can_write(name):
            raise UnauthorizedError(f"You don't have write access to skill '{name}'")

    @staticmethod
    def _skill_summary(skill: Skill) -> dict[str, Any]:
        return {
            "name": skill.name,
            "package": skill.package,
            "description": skill.description,
            "version": skill.version,
            "author": skill.author,
            "category": skill.category,
            "tags": skill.tags,
            "keywords": skill.keywords,
            "published": skill.published,
        }

    # --- Reads ---
    async def list_skills(
        self, user: UserIdentity, category: str | None = None
    ) -> dict[str, Any]:
        self._audit(user, "list_skills")
        access = await self._access(user)
        skills = [
            s
            for s in await self.marketplace.list_skills()
            if access.can_read(s.name) and (category is None or s.category == category)
        ]
        return {
            "count": len(skills),
            "skills": [
                {**self._skill_summary(s), "editable": access.can_write(s.name)}
                for s in skills
            ],
        }

    async def get_skill_details(self, user: UserIdentity, name: str) -> dict[str, Any]:
        self._audit(user, "get_skill", skill=name)
        access = await self._access(user)
        self._require_read(access, name)
        skill = await self._require_skill(name)
        skill_md = await self.marketplace.fetch_skill_md(skill.package, skill.dir_name)
        return {
            "skill": self._skill_summary(skill),
            "skill_md": skill_md,
            "editable": access.can_write(name),
        }

    async def fetch_skill_files(self, user: UserIdentity, name: str) -> dict[str, Any]:
        self._audit(user, "fetch_skill_files", skill=name)
        access = await self._access(user)
        self._require_read(access, name)
        skill = await self._require_skill(name)
        files = await self.marketplace.fetch_skill_files(skill)
        return {"skill": {"name": skill.name, "version": skill.version}, "files": files}

    async def check_updates(
        self, user: UserIdentity, installed: list[dict[str, Any]]
    ) -> dict[str, Any]:
        self._audit(user, "check_updates")
        access = await self._access(user)
        registry = await self.marketplace.get_registry()
        updates: list[dict[str, str]] = []
        skipped: list[dict[str, str]] = []
        for item in installed:
            name = str(item.get("name") or "")
            version = str(item.get("version") or "")
            if not name or not access.can_read(name):
                continue
            skill = await self.marketplace.get_skill(name)
            entry = (
                registry.find_by_package(skill.package) if skill else registry.find(name)
            )
            if entry is None or not entry.version:
                continue
            try:
                available = is_update_available(version, entry.version)
            except InvalidError as exc:
                # One bad version only drops its own item from the report.
                skipped.append({"name": name, "reason": exc.message})
                continue
            if available:
                updates.append(
                    {
                        "name": name,
                        "installed_version": version,
                        "available_version": entry.version,
                    }
                )
        return {"has_updates": bool(updates), "updates": updates, "skipped": skipped}

    async def whoami(self, user: UserIdentity) -> dict[str, Any]:
        access = await self._access(user)
        return {**user.to_dict(), "is_editor": access.is_editor()}

    # --- Tokens ---
    async def issue_api_session(self, user: UserIdentity) -> dict[str, Any]:
        self._audit(user, "auth")
        issued = await self.tokens.issue(
            TokenKind.API,
            {
                "provider": user.provider,
                "uid": user.uid,
                "email": user.email,
                "name": user.name,
                "user": user.label,
            },
        )
        return {
            "token": issued.token,
            "base_url": self.connector_url,
            "expires_in": issued.expires_in,
        }

    async def authenticate(self, token: str) -> UserIdentity:
        payload = await self.tokens.resolve_session(token)
        return UserIdentity(
            provider=payload["provider"],
            uid=payload["uid"],
            email=payload.get("email", ""),
            name=payload.get("name", ""),
        )

    async def issue_install_token(self, user: UserIdentity, name: str) -> dict[str, Any]:
        self._audit(user, "install_skill", skill=name)
        access = await self._access(user)
        self._require_read(access, name)
        skill = await self._require_skill(name)
        issued = await self.tokens.issue(
            TokenKind.INSTALL,
            {"skill": skill.name, "version": skill.version, "user": user.label, "user_id": user.id},
        )
        return {
            "install_token": issued.token,
            "skill": skill.name,
            "version": skill.version,
            "expires_in": issued.expires_in,
            "command": f"curl -sf {self.connector_url}/api/install/{issued.token}",
        }

    async def redeem_install_token(self, token: str) -> dict[str, Any]:
        payload = await self.tokens.redeem(TokenKind.INSTALL, token)
        logger.info("install token redeemed for %s by %s", payload["skill"], payload.get("user"))
        skill = await self._require_skill(payload["skill"])
        files = await self.marketplace.fetch_skill_files(skill)
        return {"skill": {"name": skill.name, "version": skill.version}, "files": files}

    async def issue_edit_token(self, user: UserIdentity, name: str) -> dict[str, Any]:
        self._audit(user, "edit_skill", skill=name)
        access = await self._access(user)
        self._require_write(access, name)
        skill = await self._require_skill(name)
        issued = await self.tokens.issue(
            TokenKind.EDIT,
            {
                "skill": skill.name,
                "package": skill.package,
                "dir_name": skill.dir_name,
                "version": skill.version,
                "user": user.label,
                "user_id": user.id,
            },
        )
        return {
            "edit_token": issued.token,
            "skill": skill.name,
            "package": skill.package,
            "version": skill.version,
            "expires_in": issued.expires_in,
            "command": f"curl -sf {self.connector_url}/api/edit/{issued.token}",
        }

    async def redeem_edit_token(self, token: str) -> dict[str, Any]:
        payload = await self.tokens.redeem(TokenKind.EDIT, token)
        logger.info("edit token redeemed for %s by %s", payload["skill"], payload.get("user"))
        skill = await self._require_skill(payload["skill"])
        files = await self.marketplace.fetch_skill_files(skill)
        return {
            "skill": {
                "name": skill.name,
                "package": skill.package,
                "dir_name": skill.dir_name,
                "version": skill.version,
            },
            "files": files,
        }

    # --- Mutations ---
    @staticmethod
    def _prepare_changes(files: list[dict[str, Any]]) -> list[FileChange]:
        """Validate the whole batch before anything is written."""
        if not files or not isinstance(files, list):
            raise InvalidError("files array is required")
        changes: list[FileChange] = []
        for item in files:
            raw_path = item.get("path") if isinstance(item, dict) else None
            path = validate_file_path(raw_path) if isinstance(raw_path, str) else None
            if path is None:
                raise InvalidError(f'Path "{raw_path}" is invalid')
            content = item.get("content")
            if not isinstance(content, str):
                raise InvalidError(f'Content for "{path}" must be a string')
            if content == "":
                if path == DECLARATION_NAME:
                    raise InvalidError("SKILL.md is required and cannot be deleted")
                changes.append(FileChange(path=path, data=None))
                continue
            if item.get("encoding") == "base64":
                try:
                    data = base64.b64decode(content, validate=True)
                except (binascii.Error, ValueError) as exc:
                    raise InvalidError(f'Content for "{path}" is not valid base64') from exc
            else:
                data = content.encode("utf-8")
            changes.append(FileChange(path=path, data=data))
        return changes

    async def save_skill(
        self,
        user: UserIdentity,
        name: str,
        files: list[dict[str, Any]],
        skill_group: str | None = None,
        commit_message: str | None = None,
    ) -> dict[str, Any]:
        changes = self._prepare_changes(files)

        access = await self._access(user)
        self._require_write(access, name)
        existing = await self.marketplace.get_skill(name)

        is_new_group = False
        if existing is not None:
            group, dir_name = existing.package, existing.dir_name
        else:
            if not access.is_editor():
                raise UnauthorizedError("Only editors can create new skills")
            if not validate_name(name):
                raise InvalidError(f"Invalid skill name '{name}'")
            group, dir_name = skill_group or name, name
            if not validate_name(group):
                raise InvalidError(f"Invalid skill group name '{group}'")
            is_new_group = await self.marketplace.get_manifest(group) is None

        declaration = next((c for c in changes if c.is_declaration and c.data), None)
        if existing is None and declaration is None:
            raise InvalidError(
                "New skills must include SKILL.md with name and description frontmatter"
            )
        if declaration is not None:
            try:
                text = declaration.data.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise InvalidError("SKILL.md must be UTF-8 text") from exc
            fm_name, fm_description = declaration_fields(text)
            missing = [
                field for field, value in (("name", fm_name), ("description", fm_description))
                if not value
            ]
            if missing:
                raise InvalidError(f"SKILL.md must have {' and '.join(missing)} in frontmatter")

        self._audit(user, "save_skill", skill=name, skill_group=group)
        base_message = commit_message or f"Update {name} skill files"
        results: dict[str, list[str]] = {
            "created": [],
            "updated": [],
            "deleted": [],
            "unchanged": [],
        }
        writer = self.marketplace.writer
        try:
            if is_new_group:
                await self.marketplace.create_manifest(
                    Manifest(
                        name=group,
                        version=DEFAULT_VERSION,
                        description=f"Skill group: {group}" if skill_group else f"Skill: {name}",
                        author=Author(name=user.name or user.label, email=user.email or None),
                        license="MIT",
                    ),
                    f"Create {group} skill group\n\nRequested by: {user.label}",
                )
                results["created"].append(manifest_path(group))

            for change in changes:
                full_path = f"{skill_dir_path(group, dir_name)}/{change.path}"
                try:
                    await self._apply_change(writer, change, full_path, base_message, user, results)
                except SkillportError as exc:
                    completed = [p for k in ("created", "updated", "deleted") for p in results[k]]
                    if not completed:
                        raise
                    raise PartialFailureError(
                        f"Saved {len(completed)} of {len(changes)} file(s) before {full_path} failed: "
                        f"{exc.message}",
                        completed=completed,
                        failed=[full_path],
                    ) from exc
        finally:
            await self.marketplace.invalidate_package(group)
            await self.marketplace.invalidate_skill(group, dir_name)

        summary = ", ".join(
            f"{len(results[k])} file(s) {k}"
            for k in ("created", "updated", "deleted", "unchanged")
            if results[k]
        )
        return {
            "success": True,
            "skill": name,
            "skill_group": group,
            "is_new_skill": existing is None,
            "is_new_group": is_new_group,
            "files": results,
            "summary": summary or "No changes",
        }

    @staticmethod
    async def _apply_change(
        writer: GitHubContentClient,
        change: FileChange,
        full_path: str,
        base_message: str,
        user: UserIdentity,
        results: dict[str, list[str]],
    ) -> None:
        # Read-then-write per file; the tag from the read guards the write.
        try:
            current, sha = await writer.read_blob(full_path)
        except NotFoundError:
            current, sha = None, None

        if change.data is None:
            if sha is None:
                return
            await writer.delete_file(
                full_path, f"Delete {change.path}\n\nRequested by: {user.label}", expected_sha=sha
            )
            results["deleted"].append(full_path)
            return

        if current == change.data:
            results["unchanged"].append(full_path)
            return
        message = f"{base_message}\n\nFile: {change.path}\nRequested by: {user.label}"
        await writer.write_file(full_path, change.data, message, expected_sha=sha)
        results["created" if sha is None else "updated"].append(full_path)

    async def delete_skill(
        self, user: UserIdentity, name: str, confirm: bool = False
    ) -> dict[str, Any]:
        if not confirm:
            raise InvalidError("Set confirm=true to delete the skill")
        access = await self._access(user)
        self._require_write(access, name)
        skill = await self._require_skill(name)
        self._audit(user, "delete_skill", skill=name, package=skill.package)

        package_deleted = False
        try:
            if await self.marketplace.count_skill_directories(skill.package) == 1:
                deleted = await self.marketplace.writer.delete_directory(
                    package_path(skill.package),
                    f"Delete plugin {skill.package} (last skill removed)\n\n"
                    f"Requested by: {user.label}",
                )
                package_deleted = True
                try:
                    await self.marketplace.remove_from_registry(
                        skill.package,
                        f"Remove {skill.package} from marketplace\n\nRequested by: {user.label}",
                    )
                except NotFoundError:
                    logger.info("%s was not published; registry untouched", skill.package)
                except SkillportError as exc:
                    raise PartialFailureError(
                        f"Deleted {skill.package} but could not remove it from the "
                        f"marketplace: {exc.message}",
                        completed=deleted,
                        failed=["registry"],
                    ) from exc
            else:
                deleted = await self.marketplace.writer.delete_directory(
                    skill.path, f"Delete skill {name}\n\nRequested by: {user.label}"
                )
        finally:
            await self.marketplace.invalidate_skill(skill.package, skill.dir_name)
            await self.marketplace.invalidate_package(skill.package)
            await self.marketplace.invalidate_registry()

        return {
            "success": True,
            "skill": name,
            "package": skill.package,
            "package_deleted": package_deleted,
            "deleted_files": deleted,
        }

    async def bump_version(self, user: UserIdentity, name: str, kind: str) -> dict[str, Any]:
        access = await self._access(user)
        self._require_write(access, name)
        skill = await self._require_skill(name)
        group = skill.package

        registry = await self.marketplace.get_registry()
        entry = registry.find_by_package(group)
        if entry is None:
            raise InvalidError(
                f"Skill '{name}' is not published. Use publish first."
            )
        self._audit(user, "bump_version", skill=name, skill_group=group)

        fallback = entry.version or DEFAULT_VERSION
        completed: list[str] = []
        try:
            try:
                current, new_version = await self.marketplace.bump_manifest_version(
                    group, kind, fallback, user.label
                )
                completed.append(manifest_path(group))
            except NotFoundError:
                current = fallback
                new_version = bump_version(current, kind)

            message = f"Bump {group} version to {new_version}\n\nRequested by: {user.label}"
            try:
                await self.marketplace.update_registry_version(entry.name, new_version, message)
            except SkillportError as exc:
                raise PartialFailureError(
                    f"Version bump to {new_version} incomplete: {exc.message}",
                    completed=completed,
                    failed=["registry"],
                ) from exc
        finally:
            await self.marketplace.invalidate_package(group)
            await self.marketplace.invalidate_registry()

        return {
            "success": True,
            "skill": name,
            "skill_group": group,
            "old_version": current,
            "new_version": new_version,
        }

    async def publish_skill(
        self,
        user: UserIdentity,
        name: str,
        description: str,
        category: str | None = None,
        tags: list[str] | None = None,
        keywords: list[str] | None = None,
    ) -> dict[str, Any]:
        if not description:
            raise InvalidError("description is required")
        access = await self._access(user)
        if not access.is_editor():
            raise UnauthorizedError("Only editors can publish skills")
        skill = await self._require_skill(name)
        group = skill.package
        self._audit(user, "publish_skill", skill=name, skill_group=group)

        if not await self.marketplace.writer.file_exists(
            declaration_path(group, skill.dir_name)
        ):
            raise InvalidError(f"Skill file not found for '{name}'")

        manifest = await self.marketplace.get_manifest(group)
        entry = RegistryEntry(
            name=group,
            source=f"./{package_path(group)}",
            description=description,
            version=(manifest.version if manifest else None) or skill.version,
            author=manifest.author if manifest else None,
            category=category,
            tags=list(tags or []),
            keywords=list(keywords or []),
        )
        try:
            await self.marketplace.add_to_registry(
                entry, f"Publish {group} to marketplace\n\nRequested by: {user.label}"
            )
        finally:
            await self.marketplace.invalidate_registry()
        return {"success": True, "skill": name, "skill_group": group}

    async def refresh_cache(self, user: UserIdentity, name: str | None = None) -> dict[str, Any]:
        access = await self._access(user)
        if not access.is_editor():
            raise UnauthorizedError("Only editors can refresh the marketplace cache")
        self._audit(user, "refresh_cache", skill=name)
        if name:
            skill = await self._require_skill(name)
            await self.marketplace.invalidate_skill(skill.package, skill.dir_name)
            await self.marketplace.invalidate_package(skill.package)
        else:
            await self.marketplace.invalidate_all()
        return {"success": True, "refreshed": name or "all"}

"""
skillport.server

FastMCP server exposing a GitHub-hosted skill marketplace to MCP-aware
clients, with per-skill access control and token-based bulk delivery.

Server-level documentation:
- Purpose: let agents discover, install, create, edit and publish skills stored
  in a marketplace repository (registry + plugins/<package>/skills/<skill>/).
- Why use it:
  * List skills visible to the caller, with versions and editability
  * Fetch a skill's SKILL.md or its whole file tree
  * Hand large installs to a single-use token redeemed over a side channel
  * Save, delete, publish and version skills, gated by .skillport/access.json
- Transport: STDIO by default; `--http` serves streamable HTTP and the
  redemption routes /api/install/{token} and /api/edit/{token}
- Caching: registry/policy 5 min, manifests 1 h, skill file trees 6 h
- Logging: Console + rotating file logs, one audit line per operation

Environment: see skillport.settings.

Usage:
- As a script:
  python -m skillport.server          # starts stdio server
  python -m skillport.server --help   # CLI for inspection without starting server

- As a module within MCP client config (stdio):
  command: python
  args: ["-m", "skillport.server"]
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from skillport import __version__
from skillport.access import UserIdentity
from skillport.cache import KVStore, MemoryKVStore, TTLCache
from skillport.errors import (
    ExpiredError,
    InvalidError,
    SkillportError,
    UnauthenticatedError,
)
from skillport.github_client import GitHubContentClient
from skillport.marketplace import Marketplace
from skillport.service import SkillportService
from skillport.settings import SERVER_NAME, Settings, configure_logging
from skillport.tokens import TokenKind, TokenService

logger = logging.getLogger(__name__)

_service: SkillportService | None = None


# --- Wiring ---
def build_service(
    settings: Settings,
    store: KVStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SkillportService:
    """
    function_purpose: Assemble the remote clients, cache, token store and service.

    One KV store backs both the TTL cache and the token records. A separate
    write client is created only when the write token differs.
    """
    reader = GitHubContentClient(
        settings.repo,
        settings.read_token,
        branch=settings.branch,
        base_url=settings.api_url,
        transport=transport,
    )
    writer = reader
    if settings.write_token and settings.write_token != settings.read_token:
        writer = GitHubContentClient(
            settings.repo,
            settings.write_token,
            branch=settings.branch,
            base_url=settings.api_url,
            transport=transport,
        )
    kv = store or MemoryKVStore()
    marketplace = Marketplace(reader, TTLCache(kv), writer)
    return SkillportService(marketplace, TokenService(kv), settings.connector_url)


def set_service(service: SkillportService | None) -> None:
    global _service
    _service = service


def get_service() -> SkillportService:
    global _service
    if _service is None:
        _service = build_service(Settings.from_env())
    return _service


def _current_identity() -> UserIdentity:
    """
    function_purpose: Identity of the caller as supplied by the identity collaborator.

    Over the local stdio transport the collaborator is the process environment.
    """
    return UserIdentity(
        provider=os.environ.get("SKILLPORT_USER_PROVIDER", "local").strip() or "local",
        uid=os.environ.get("SKILLPORT_USER_ID", "anonymous").strip() or "anonymous",
        email=os.environ.get("SKILLPORT_USER_EMAIL", "").strip(),
        name=os.environ.get("SKILLPORT_USER_NAME", "").strip(),
    )


async def _invoke(call: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    """Run an operation and turn a SkillportError into a typed failure payload."""
    try:
        return await call()
    except SkillportError as exc:
        logger.warning("operation failed (%s): %s", exc.kind, exc.message)
        return exc.to_failure()


mcp = FastMCP(
    SERVER_NAME,
    instructions=(
        "Skillport MCP Server\n"
        "\n"
        "Purpose:\n"
        "- Browse and manage skills stored in a GitHub-hosted marketplace repository.\n"
        "\n"
        "Exposed tools:\n"
        "- skillport_server_info(): server name, repository, transport\n"
        "- skillport_whoami(): your stable id (provider:uid) and editor status\n"
        "- skillport_list_skills(category?): skills you can read\n"
        "- skillport_get_skill(name): metadata and SKILL.md\n"
        "- skillport_fetch_skill_files(name): every file of a skill (binary files base64)\n"
        "- skillport_install_token(name) / skillport_redeem_install_token(token)\n"
        "- skillport_edit_token(name) / skillport_redeem_edit_token(token)\n"
        "- skillport_save_skill(name, files, skill_group?, commit_message?)\n"
        "- skillport_delete_skill(name, confirm)\n"
        "- skillport_bump_version(name, type)\n"
        "- skillport_publish_skill(name, description, category?, tags?, keywords?)\n"
        "- skillport_check_updates(installed)\n"
        "- skillport_auth(): short-lived API session token for the HTTP routes\n"
        "- skillport_refresh_cache(name?): editors only\n"
        "\n"
        "Failures come back as {\"error\": {\"kind\", \"message\"}}. Kinds: not_found, unauthorized,\n"
        "conflict, already_consumed, expired, invalid, remote_unavailable, rate_limited,\n"
        "partial_failure (multi-file changes are not rolled back; see completed/failed).\n"
        "\n"
        "Tokens are single-use and expire after 5 minutes.\n"
    ),
)


# --- Tools ---
@mcp.tool
async def skillport_server_info() -> dict[str, Any]:
    """
    function_purpose: Return server-level information.

    Returns:
    - name: str           Server name
    - version: str        Package version
    - repository: str     Marketplace repository in use
    - transport: str      Transport the process was started with
    """
    settings = Settings.from_env()
    return {
        "name": SERVER_NAME,
        "version": __version__,
        "repository": settings.repo,
        "transport": os.environ.get("SKILLPORT_TRANSPORT", "stdio"),
    }


@mcp.tool
async def skillport_whoami() -> dict[str, Any]:
    """
    function_purpose: Identify the caller.

    Returns {id, email, name, provider, is_editor}. The id (provider:uid) is the
    value to place in .skillport/access.json.
    """
    return await _invoke(lambda: get_service().whoami(_current_identity()))


@mcp.tool
async def skillport_list_skills(category: str | None = None) -> dict[str, Any]:
    """
    function_purpose: List skills the caller can read.

    Args:
    - category: str | None   Only skills whose registry category matches

    Returns: {count, skills: [{name, package, description, version, author,
    category, tags, keywords, published, editable}]}
    """
    return await _invoke(lambda: get_service().list_skills(_current_identity(), category))


@mcp.tool
async def skillport_get_skill(name: str) -> dict[str, Any]:
    """
    function_purpose: Get a skill's metadata and full SKILL.md text.
    """
    return await _invoke(lambda: get_service().get_skill_details(_current_identity(), name))


@mcp.tool
async def skillport_fetch_skill_files(name: str) -> dict[str, Any]:
    """
    function_purpose: Fetch every file of a skill.

    Returns: {skill: {name, version}, files: [{path, content, encoding?}]}.
    Files with encoding "base64" are binary.
    """
    return await _invoke(lambda: get_service().fetch_skill_files(_current_identity(), name))


@mcp.tool
async def skillport_install_token(name: str) -> dict[str, Any]:
    """
    function_purpose: Issue a single-use install token for a skill.

    The returned command downloads the skill through the side channel; the
    token expires after 5 minutes and works once.
    """
    return await _invoke(lambda: get_service().issue_install_token(_current_identity(), name))


@mcp.tool
async def skillport_redeem_install_token(token: str) -> dict[str, Any]:
    """
    function_purpose: Redeem an install token for the skill's files.
    """
    return await _invoke(lambda: get_service().redeem_install_token(token))


@mcp.tool
async def skillport_edit_token(name: str) -> dict[str, Any]:
    """
    function_purpose: Issue a single-use token to download a skill for editing (write access required).
    """
    return await _invoke(lambda: get_service().issue_edit_token(_current_identity(), name))


@mcp.tool
async def skillport_redeem_edit_token(token: str) -> dict[str, Any]:
    """
    function_purpose: Redeem an edit token for the skill's files and location.
    """
    return await _invoke(lambda: get_service().redeem_edit_token(token))


@mcp.tool
async def skillport_save_skill(
    name: str,
    files: list[dict[str, Any]],
    skill_group: str | None = None,
    commit_message: str | None = None,
) -> dict[str, Any]:
    """
    function_purpose: Create or update a skill's files.

    Args:
    - name: str                 Skill name
    - files: list[dict]         [{path, content, encoding?}] relative to the skill directory;
                                empty content deletes the file (SKILL.md cannot be deleted);
                                encoding "base64" for binary content
    - skill_group: str | None   Package for a new skill (defaults to the skill name)
    - commit_message: str | None

    Constraints:
    - Every path is validated before anything is written; one bad path rejects the batch.
    - New skills need SKILL.md with name and description, and editor rights.
    - Files whose content is unchanged are not rewritten.
    """
    return await _invoke(
        lambda: get_service().save_skill(
            _current_identity(), name, files, skill_group, commit_message
        )
    )


@mcp.tool
async def skillport_delete_skill(name: str, confirm: bool = False) -> dict[str, Any]:
    """
    function_purpose: Delete a skill; deleting the last skill of a package removes the package.

    Irreversible; requires confirm=True.
    """
    return await _invoke(lambda: get_service().delete_skill(_current_identity(), name, confirm))


@mcp.tool
async def skillport_bump_version(name: str, type: str = "patch") -> dict[str, Any]:
    """
    function_purpose: Bump the package version of a published skill.

    Args:
    - type: "major" | "minor" | "patch"
    """
    return await _invoke(lambda: get_service().bump_version(_current_identity(), name, type))


@mcp.tool
async def skillport_publish_skill(
    name: str,
    description: str,
    category: str | None = None,
    tags: list[str] | None = None,
    keywords: list[str] | None = None,
) -> dict[str, Any]:
    """
    function_purpose: Add a skill's package to the marketplace registry (editors only).
    """
    return await _invoke(
        lambda: get_service().publish_skill(
            _current_identity(), name, description, category, tags, keywords
        )
    )


@mcp.tool
async def skillport_check_updates(installed: list[dict[str, str]]) -> dict[str, Any]:
    """
    function_purpose: Compare installed skill versions with the marketplace.

    Args:
    - installed: [{name, version}]

    Returns: {has_updates, updates: [{name, installed_version, available_version}],
    skipped: [{name, reason}] for items whose version cannot be compared}
    """
    return await _invoke(lambda: get_service().check_updates(_current_identity(), installed))


@mcp.tool
async def skillport_auth() -> dict[str, Any]:
    """
    function_purpose: Issue a 5-minute API session token for the HTTP routes.
    """
    return await _invoke(lambda: get_service().issue_api_session(_current_identity()))


@mcp.tool
async def skillport_refresh_cache(name: str | None = None) -> dict[str, Any]:
    """
    function_purpose: Drop cached marketplace data for one skill or everything (editors only).
    """
    return await _invoke(lambda: get_service().refresh_cache(_current_identity(), name))


# --- Side-channel HTTP routes ---
_NO_STORE = {"Cache-Control": "no-store"}


async def _json_route(call: Callable[[], Awaitable[dict[str, Any]]]) -> JSONResponse:
    try:
        payload = await call()
    except SkillportError as exc:
        logger.warning("route failed (%s): %s", exc.kind, exc.message)
        return JSONResponse(exc.to_failure(), status_code=exc.http_status, headers=_NO_STORE)
    return JSONResponse(payload, headers=_NO_STORE)


async def redeem_response(kind: TokenKind, token: str) -> JSONResponse:
    service = get_service()
    if kind is TokenKind.INSTALL:
        return await _json_route(lambda: service.redeem_install_token(token))
    return await _json_route(lambda: service.redeem_edit_token(token))


async def _session_user(request: Request) -> UserIdentity:
    header = request.headers.get("Authorization", "")
    token = header[len("Bearer ") :] if header.startswith("Bearer ") else ""
    try:
        return await get_service().authenticate(token)
    except (InvalidError, ExpiredError) as exc:
        raise UnauthenticatedError(
            "Invalid or expired token. Call skillport_auth to get a new token."
        ) from exc


@mcp.custom_route("/api/install/{token}", methods=["GET"])
async def install_route(request: Request) -> JSONResponse:
    return await redeem_response(TokenKind.INSTALL, request.path_params["token"])


@mcp.custom_route("/api/edit/{token}", methods=["GET"])
async def edit_route(request: Request) -> JSONResponse:
    return await redeem_response(TokenKind.EDIT, request.path_params["token"])


@mcp.custom_route("/api/whoami", methods=["GET"])
async def whoami_route(request: Request) -> JSONResponse:
    async def call() -> dict[str, Any]:
        return await get_service().whoami(await _session_user(request))

    return await _json_route(call)


@mcp.custom_route("/api/skills", methods=["GET"])
async def list_skills_route(request: Request) -> JSONResponse:
    async def call() -> dict[str, Any]:
        user = await _session_user(request)
        return await get_service().list_skills(user, request.query_params.get("category"))

    return await _json_route(call)


# --- Entry points ---
def run(http: bool = False, host: str = "127.0.0.1", port: int = 8000) -> None:
    """
    function_purpose: Entry point to start the MCP server.

    - Configures logging
    - Runs FastMCP over stdio (default) or streamable HTTP
    """
    logger = configure_logging()
    settings = Settings.from_env()
    logger.info("Server starting with repository=%s", settings.repo or "<unset>")
    if http:
        os.environ["SKILLPORT_TRANSPORT"] = "http"
        mcp.run(transport="http", host=host, port=port)
    else:
        mcp.run()  # stdio transport by default


def cli_main() -> None:
    """
    function_purpose: CLI for inspecting the marketplace without starting the MCP server.

    Usage:
      python -m skillport.server --list [--category C]
      python -m skillport.server --detail <NAME>
      python -m skillport.server --files <NAME>
      python -m skillport.server --whoami
      python -m skillport.server --http [--host H] [--port P]
    """
    import argparse
    import json

    parser = argparse.ArgumentParser(
        prog="skillport.server",
        description="Inspect a Skillport marketplace or start the MCP server.",
    )
    parser.add_argument("--list", action="store_true", help="List visible skills and exit")
    parser.add_argument("--category", metavar="CATEGORY", help="Category filter for --list")
    parser.add_argument("--detail", metavar="NAME", help="Show metadata and SKILL.md for a skill")
    parser.add_argument("--files", metavar="NAME", help="Fetch every file of a skill")
    parser.add_argument("--whoami", action="store_true", help="Show the resolved identity")
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Start MCP stdio server (default when no flags used)",
    )
    parser.add_argument("--http", action="store_true", help="Serve over streamable HTTP")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()

    call: Callable[[], Awaitable[dict[str, Any]]] | None = None
    user = _current_identity()
    if args.list:
        call = lambda: get_service().list_skills(user, args.category)  # noqa: E731
    elif args.detail:
        call = lambda: get_service().get_skill_details(user, args.detail)  # noqa: E731
    elif args.files:
        call = lambda: get_service().fetch_skill_files(user, args.files)  # noqa: E731
    elif args.whoami:
        call = lambda: get_service().whoami(user)  # noqa: E731

    if call is not None:
        configure_logging()
        result = asyncio.run(_invoke(call))
        print(json.dumps(result, indent=2, ensure_ascii=False))
        return

    # Default: start server
    run(http=args.http, host=args.host, port=args.port)


if __name__ == "__main__":
    cli_main()

"""
skillport: FastMCP server exposing a GitHub-hosted skill marketplace as MCP tools.

The package wraps a marketplace repository (registry, access policy, plugin
packages holding SKILL.md folders) behind cached reads, per-skill access
control, single-use delivery tokens and guarded multi-file writes.
"""

__version__: str = "0.1.0"


def version() -> str:
    return __version__


__all__: list[str] = ["__version__", "version"]

"""
skillport.settings

Environment-driven configuration, remote-tree layout constants and logging
setup for the Skillport connector.

Environment (optional unless noted):
- GITHUB_SERVICE_TOKEN: token used for reads (anonymous when unset)
- GITHUB_WRITE_TOKEN: token used for writes (defaults to GITHUB_SERVICE_TOKEN)
- MARKETPLACE_REPO: "owner/repo" hosting the marketplace (required for remote calls)
- MARKETPLACE_BRANCH: branch to read and write (repository default when unset)
- GITHUB_API_URL: content API base URL (default: https://api.github.com)
- CONNECTOR_URL: public base URL placed in install/edit commands
- SKILLPORT_USER_PROVIDER / SKILLPORT_USER_ID / SKILLPORT_USER_EMAIL / SKILLPORT_USER_NAME:
  identity handed to the core when running over the local stdio transport
- LOG_FILE: override log file path (default: <repo_root>/logs/skillport.log)
- LOG_LEVEL: logging level name (default: INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path


# --- Paths & constants ---
REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_LOG_DIR = REPO_ROOT / "logs"
DEFAULT_LOG_FILE = DEFAULT_LOG_DIR / "skillport.log"
SERVER_NAME = "Skillport"

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_CONNECTOR_URL = "http://localhost:8000"
USER_AGENT = "Skillport-Connector/1.0"

# Remote tree layout, relative to the marketplace repository root.
REGISTRY_PATH = ".claude-plugin/marketplace.json"
ACCESS_POLICY_PATH = ".skillport/access.json"
PACKAGES_ROOT = "plugins"
MANIFEST_NAME = ".claude-plugin/plugin.json"
SKILLS_DIRNAME = "skills"
DECLARATION_NAME = "SKILL.md"

DEFAULT_VERSION = "1.0.0"

# Cache TTL tiers (seconds)
REGISTRY_TTL = 300
ACCESS_POLICY_TTL = 300
CATALOG_TTL = 300
MANIFEST_TTL = 3600
SKILL_FILES_TTL = 21600

# Token TTLs (seconds)
TOKEN_TTL = 300
USED_TOKEN_TTL = 60


@dataclass(frozen=True)
class Settings:
    repo: str
    read_token: str = ""
    write_token: str = ""
    branch: str | None = None
    api_url: str = DEFAULT_API_URL
    connector_url: str = DEFAULT_CONNECTOR_URL

    @classmethod
    def from_env(cls) -> Settings:
        read_token = os.environ.get("GITHUB_SERVICE_TOKEN", "").strip()
        write_token = os.environ.get("GITHUB_WRITE_TOKEN", "").strip() or read_token
        branch = os.environ.get("MARKETPLACE_BRANCH", "").strip() or None
        return cls(
            repo=os.environ.get("MARKETPLACE_REPO", "").strip(),
            read_token=read_token,
            write_token=write_token,
            branch=branch,
            api_url=(os.environ.get("GITHUB_API_URL") or DEFAULT_API_URL).rstrip("/"),
            connector_url=(
                os.environ.get("CONNECTOR_URL") or DEFAULT_CONNECTOR_URL
            ).rstrip("/"),
        )


def package_path(package: str) -> str:
    return f"{PACKAGES_ROOT}/{package}"


def manifest_path(package: str) -> str:
    return f"{package_path(package)}/{MANIFEST_NAME}"


def skill_dir_path(package: str, dir_name: str) -> str:
    return f"{package_path(package)}/{SKILLS_DIRNAME}/{dir_name}"


def declaration_path(package: str, dir_name: str) -> str:
    return f"{skill_dir_path(package, dir_name)}/{DECLARATION_NAME}"


# --- Logging setup ---
def configure_logging() -> logging.Logger:
    """
    function_purpose: Configure application-wide logging to both console and rotating file.

    - Creates logs directory if needed.
    - Sets formatter and levels from LOG_LEVEL.
    - Returns the configured "Skillport" logger; module loggers under
      "skillport.*" propagate to the root handlers set here.
    """
    logger = logging.getLogger(SERVER_NAME)
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(level)

    log_file_env = os.environ.get("LOG_FILE")
    log_file = Path(log_file_env) if log_file_env else DEFAULT_LOG_FILE
    log_file.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    # Console handler. stderr keeps stdout clean for the stdio transport.
    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(formatter)

    # Rotating file handler (5 files, 5MB each)
    fh = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=5)
    fh.setLevel(level)
    fh.setFormatter(formatter)

    for name in (SERVER_NAME, "skillport"):
        target = logging.getLogger(name)
        target.setLevel(level)
        target.handlers.clear()
        target.addHandler(sh)
        target.addHandler(fh)

    logger.info("Logging initialized. File: %s", str(log_file))
    return logger

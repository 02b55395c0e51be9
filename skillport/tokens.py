"""
skillport.tokens

Short-lived, single-use tokens that hand bulk content (install packages, edit
checkouts) to a side-channel fetch instead of the tool-call response.

Lifecycle: issued unused -> flipped to used on the first redemption attempt,
before the caller performs the expensive fetch -> expired by TTL regardless of
state. The flip-first ordering is what makes a second, concurrent redemption
fail; the price is that a failed fetch burns the token.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from skillport.cache import KVStore
from skillport.errors import AlreadyConsumedError, ExpiredError, InvalidError
from skillport.settings import TOKEN_TTL, USED_TOKEN_TTL

logger = logging.getLogger(__name__)


class TokenKind(str, Enum):
    INSTALL = "install"
    EDIT = "edit"
    API = "api"

    @property
    def prefix(self) -> str:
        return f"sk_{self.value}_"

    @property
    def store_namespace(self) -> str:
        return f"{self.value}_token:"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    kind: TokenKind
    expires_in: int


class TokenService:
    def __init__(
        self,
        store: KVStore,
        clock: Callable[[], float] = time.time,
        ttl: int = TOKEN_TTL,
    ) -> None:
        self.store = store
        self.clock = clock
        self.ttl = ttl

    @staticmethod
    def _check_prefix(kind: TokenKind, token: str) -> None:
        if not token or not token.startswith(kind.prefix):
            raise InvalidError(f"Invalid token format: expected '{kind.prefix}' prefix")

    async def issue(self, kind: TokenKind, payload: dict[str, Any]) -> IssuedToken:
        token = kind.prefix + secrets.token_urlsafe(24)
        record = {
            "payload": payload,
            "used": False,
            "created": int(self.clock() * 1000),
        }
        await self.store.put(kind.store_namespace + token, json.dumps(record), self.ttl)
        logger.info("issued %s token for %s", kind.value, payload.get("user", "unknown"))
        return IssuedToken(token=token, kind=kind, expires_in=self.ttl)

    async def _load(self, kind: TokenKind, token: str) -> dict[str, Any]:
        self._check_prefix(kind, token)
        raw = await self.store.get(kind.store_namespace + token)
        if raw is None:
            raise ExpiredError("Token not found or expired")
        return json.loads(raw)

    async def redeem(self, kind: TokenKind, token: str) -> dict[str, Any]:
        """Consume a token and return its payload; at most one call succeeds."""
        record = await self._load(kind, token)
        if record.get("used"):
            raise AlreadyConsumedError("Token already used")

        # Flip before the caller's fetch; kept briefly for forensics only.
        record["used"] = True
        record["used_at"] = int(self.clock() * 1000)
        await self.store.put(kind.store_namespace + token, json.dumps(record), USED_TOKEN_TTL)
        return record["payload"]

    async def resolve_session(self, token: str) -> dict[str, Any]:
        """Look up an API session token without consuming it."""
        record = await self._load(TokenKind.API, token)
        return record["payload"]

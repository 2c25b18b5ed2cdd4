"""Tool-server credentials: a local JSON cache mirrored to the memory store.

Lookup order for a bearer token: local cache, memory store, auth.bearer_token
from the config, then the auth.bearer_env environment variable.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from memini.memory.store import MemoryStore
from memini.tools.mcp.config import McpServer
from memini.utils.error_handler import MeminiError
from .oauth import OAuthToken

LOGGER = logging.getLogger(__name__)


def token_var(server_id: str) -> str:
    return f"mcp_token_{server_id}"


def refresh_var(server_id: str) -> str:
    return f"mcp_refresh_{server_id}"


def client_var(server_id: str) -> str:
    return f"mcp_client_{server_id}"


def _env(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    value = os.environ.get(name, "").strip()
    return value or None


class LocalCredentialCache:
    """JSON file {tokens, client_ids, refresh_tokens}, rewritten after every change."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.tokens: Dict[str, str] = {}
        self.client_ids: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, str] = {}

    def load(self) -> "LocalCredentialCache":
        if not self.path.exists():
            return self
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            LOGGER.warning(f"Ignoring unreadable credential cache {self.path}: {e}")
            return self
        self.tokens = dict(data.get("tokens") or {})
        self.client_ids = dict(data.get("client_ids") or {})
        self.refresh_tokens = dict(data.get("refresh_tokens") or {})
        return self

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "tokens": self.tokens,
            "client_ids": self.client_ids,
            "refresh_tokens": self.refresh_tokens,
        }
        self.path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            pass


class CredentialManager:
    """Resolves and stores per-server client ids and tokens.

    Store/clear methods return a list of warning strings instead of raising:
    a local write failure or a memory-store failure degrades, it never aborts.
    """

    def __init__(self, cache: LocalCredentialCache, memory: MemoryStore):
        self.cache = cache
        self.memory = memory

    async def _remote_get(self, name: str) -> Optional[str]:
        try:
            value = await self.memory.get_variable(name)
        except MeminiError as e:
            LOGGER.warning(f"Memory store lookup {name} failed: {e}")
            return None
        return value if isinstance(value, str) and value else None

    # ========== Resolution ==========

    async def resolve_client_id(self, server: McpServer) -> Tuple[Optional[str], str]:
        """Return (client_id, source); source is '' when nothing was found."""
        auth = server.auth
        if auth.client_id:
            return auth.client_id, "config"
        value = _env(auth.client_id_env)
        if value:
            return value, f"env {auth.client_id_env}"
        if server.id in self.cache.client_ids:
            return self.cache.client_ids[server.id], "local cache"
        # Registered client ids are bound to a redirect URI; only reuse a
        # remote one when the redirect URI is pinned in config.
        if auth.redirect_uri:
            value = await self._remote_get(client_var(server.id))
            if value:
                return value, "memory store"
        return None, ""

    def resolve_client_secret(self, server: McpServer) -> Optional[str]:
        return server.auth.client_secret or _env(server.auth.client_secret_env)

    async def resolve_token(self, server: McpServer) -> Tuple[Optional[str], str]:
        if server.id in self.cache.tokens:
            return self.cache.tokens[server.id], "local cache"
        value = await self._remote_get(token_var(server.id))
        if value:
            return value, "memory store"
        if server.auth.bearer_token:
            return server.auth.bearer_token, "config"
        value = _env(server.auth.bearer_env)
        if value:
            return value, f"env {server.auth.bearer_env}"
        return None, ""

    # ========== Storage ==========

    async def store_token(self, server_id: str, token: OAuthToken) -> List[str]:
        warnings: List[str] = []
        self.cache.tokens[server_id] = token.access_token
        if token.refresh_token:
            self.cache.refresh_tokens[server_id] = token.refresh_token
        if token.client_id:
            self.cache.client_ids[server_id] = token.client_id
        try:
            self.cache.save()
        except OSError as e:
            warnings.append(f"Could not write local credential cache: {e}")

        remote = [(token_var(server_id), token.access_token)]
        if token.refresh_token:
            remote.append((refresh_var(server_id), token.refresh_token))
        if token.client_id:
            remote.append((client_var(server_id), token.client_id))
        try:
            for name, value in remote:
                await self.memory.set_variable(name, value, source="oauth")
        except MeminiError as e:
            warnings.append(f"Stored token locally, but memory store persistence failed: {e.user_message}")
        return warnings

    async def store_manual_token(self, server_id: str, access_token: str) -> List[str]:
        return await self.store_token(server_id, OAuthToken(access_token=access_token.strip()))

    async def clear_token(self, server_id: str) -> List[str]:
        warnings: List[str] = []
        self.cache.tokens.pop(server_id, None)
        self.cache.refresh_tokens.pop(server_id, None)
        try:
            self.cache.save()
        except OSError as e:
            warnings.append(f"Could not write local credential cache: {e}")
        try:
            await self.memory.delete_variable(token_var(server_id))
            await self.memory.delete_variable(refresh_var(server_id))
        except MeminiError as e:
            warnings.append(f"Cleared local token, but memory store delete failed: {e.user_message}")
        return warnings

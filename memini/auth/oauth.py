"""Browser-based OAuth 2.1 authorization for tool servers.

Flow states:

    IDLE -> PREPARING -> AWAITING_CALLBACK -> COMPLETED
                                           -> TIMED_OUT -> MANUALLY_COMPLETED

Preparation discovers endpoints (RFC 9728 protected-resource metadata, then
RFC 8414 authorization-server metadata or OpenID configuration), registers a
client dynamically (RFC 7591) when no client id is known, and builds a PKCE
(S256) authorization URL. A one-shot aiohttp listener on the redirect URI
waits for the browser callback. On timeout the pending flow is kept so the
user can paste the redirect URL (or bare code) with /mcp auth-code.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
import webbrowser
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
from aiohttp import web

from memini.tools.mcp.config import McpServer
from memini.utils.error_handler import (
    ConfigurationError,
    ConnectivityError,
    OAuthTimeoutError,
    ProtocolError,
    StateError,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_REDIRECT_URI = "http://127.0.0.1:8976/callback"
CLIENT_NAME = "memini"

_CALLBACK_OK_HTML = (
    "<html><body><h3>Memini: authorization received.</h3>"
    "<p>You can close this tab and return to the terminal.</p></body></html>"
)
_CALLBACK_FAIL_HTML = (
    "<html><body><h3>Memini: authorization failed.</h3>"
    "<p>{reason}</p></body></html>"
)


class OAuthFlowState(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    AWAITING_CALLBACK = "awaiting_callback"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    MANUALLY_COMPLETED = "manually_completed"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthServerMetadata:
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: Optional[str] = None
    scopes_supported: Tuple[str, ...] = ()


@dataclass
class PendingOAuth:
    server_id: str
    redirect_uri: str
    authorization_endpoint: str
    token_endpoint: str
    client_id: str
    code_verifier: str
    state: str
    authorization_url: str
    client_secret: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    resource: Optional[str] = None
    client_id_registered: bool = False
    created_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class OAuthToken:
    access_token: str
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None


def generate_pkce() -> Tuple[str, str]:
    """Return (code_verifier, S256 code_challenge)."""
    verifier = secrets.token_urlsafe(64)[:128]
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def extract_code(raw: str, expected_state: Optional[str] = None) -> str:
    """Pull the authorization code out of a redirect URL, query string, or bare code.

    Raises:
        ProtocolError: error response, state mismatch, or no code
    """
    raw = raw.strip()
    if not raw:
        raise ProtocolError("Authorization code is empty.")

    if "://" in raw or raw.startswith("?") or "code=" in raw:
        query = urlsplit(raw).query if "://" in raw else raw.lstrip("?")
        params = {key: values[0] for key, values in parse_qs(query).items() if values}
        if "error" in params:
            detail = params.get("error_description", params["error"])
            raise ProtocolError(f"Authorization server returned an error: {detail}")
        if expected_state and params.get("state") and params["state"] != expected_state:
            raise ProtocolError("OAuth state mismatch; restart with /mcp auth.")
        code = params.get("code")
        if not code:
            raise ProtocolError("No authorization code found in the pasted URL.")
        return code
    return raw


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


class OAuthFlowController:
    """Drives one authorization at a time.

    A new prepare() discards any stale pending flow. The controller's HTTP
    client is injectable so tests can use httpx.MockTransport.
    """

    def __init__(
        self,
        http: Optional[httpx.AsyncClient] = None,
        timeout_secs: float = 120.0,
        default_redirect_uri: str = DEFAULT_REDIRECT_URI,
        browser_opener: Callable[[str], bool] = webbrowser.open,
    ):
        self._http = http or httpx.AsyncClient(timeout=20.0, follow_redirects=True)
        self._owns_http = http is None
        self.timeout_secs = timeout_secs
        self.default_redirect_uri = default_redirect_uri
        self.browser_opener = browser_opener
        self.state = OAuthFlowState.IDLE
        self._pending: Optional[PendingOAuth] = None

    @property
    def pending(self) -> Optional[PendingOAuth]:
        return self._pending

    # ========== Discovery & registration ==========

    async def _get_json(self, url: str) -> Optional[dict]:
        try:
            response = await self._http.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise ConnectivityError(f"OAuth discovery request failed for {url}: {e}") from e
        if response.status_code != 200:
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    async def discover(self, server: McpServer) -> AuthServerMetadata:
        auth = server.auth
        if auth.authorization_url and auth.token_url:
            return AuthServerMetadata(auth.authorization_url, auth.token_url, auth.registration_url)
        if not server.url:
            raise ConfigurationError(f"MCP server '{server.id}' has no url for OAuth discovery")

        issuer = _origin(server.url)
        resource_meta = await self._get_json(f"{issuer}/.well-known/oauth-protected-resource")
        if resource_meta and resource_meta.get("authorization_servers"):
            issuer = str(resource_meta["authorization_servers"][0]).rstrip("/")

        issuer_origin = _origin(issuer)
        issuer_path = urlsplit(issuer).path.rstrip("/")
        candidates = [
            f"{issuer_origin}/.well-known/oauth-authorization-server{issuer_path}",
            f"{issuer_origin}/.well-known/openid-configuration{issuer_path}",
            f"{issuer}/.well-known/openid-configuration",
        ]
        for url in dict.fromkeys(candidates):
            meta = await self._get_json(url)
            if meta and meta.get("authorization_endpoint") and meta.get("token_endpoint"):
                LOGGER.debug(f"OAuth metadata for {server.id} from {url}")
                return AuthServerMetadata(
                    authorization_endpoint=meta["authorization_endpoint"],
                    token_endpoint=meta["token_endpoint"],
                    registration_endpoint=auth.registration_url or meta.get("registration_endpoint"),
                    scopes_supported=tuple(meta.get("scopes_supported") or ()),
                )

        LOGGER.info(f"No OAuth metadata for {server.id}; using default endpoints under {issuer}")
        return AuthServerMetadata(
            authorization_endpoint=auth.authorization_url or f"{issuer}/authorize",
            token_endpoint=auth.token_url or f"{issuer}/token",
            registration_endpoint=auth.registration_url or f"{issuer}/register",
        )

    async def register_client(
        self, metadata: AuthServerMetadata, redirect_uri: str, scopes: List[str]
    ) -> Tuple[str, Optional[str]]:
        if not metadata.registration_endpoint:
            raise ConfigurationError(
                "No client id and no registration endpoint",
                "This server needs a client id. Set auth.client_id or auth.client_id_env.",
            )
        body = {
            "client_name": CLIENT_NAME,
            "redirect_uris": [redirect_uri],
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "none",
        }
        if scopes:
            body["scope"] = " ".join(scopes)
        try:
            response = await self._http.post(metadata.registration_endpoint, json=body)
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Client registration failed: {e}") from e
        if response.status_code >= 400:
            raise ProtocolError(
                f"Client registration rejected ({response.status_code}): {response.text[:200]}"
            )
        data = response.json()
        client_id = data.get("client_id")
        if not client_id:
            raise ProtocolError("Client registration response has no client_id")
        LOGGER.info(f"Registered OAuth client {client_id}")
        return client_id, data.get("client_secret")

    # ========== Flow ==========

    async def prepare(
        self,
        server: McpServer,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> PendingOAuth:
        if server.auth.type != "oauth_browser":
            raise ConfigurationError(
                f"MCP server '{server.id}' is not configured for oauth_browser auth",
                f"'{server.id}' does not use OAuth. Set auth.type: oauth_browser or use /mcp token.",
            )
        if self._pending is not None:
            LOGGER.info(f"Discarding stale OAuth flow for {self._pending.server_id}")
            self._pending = None

        self.state = OAuthFlowState.PREPARING
        try:
            redirect_uri = server.auth.redirect_uri or self.default_redirect_uri
            metadata = await self.discover(server)
            scopes = list(server.auth.scopes) or list(metadata.scopes_supported)
            registered = False
            if not client_id:
                client_id, registered_secret = await self.register_client(metadata, redirect_uri, scopes)
                client_secret = client_secret or registered_secret
                registered = True

            verifier, challenge = generate_pkce()
            state = secrets.token_urlsafe(24)
            params: Dict[str, str] = {
                "response_type": "code",
                "client_id": client_id,
                "redirect_uri": redirect_uri,
                "code_challenge": challenge,
                "code_challenge_method": "S256",
                "state": state,
            }
            if scopes:
                params["scope"] = " ".join(scopes)
            if server.url:
                params["resource"] = server.url
            separator = "&" if "?" in metadata.authorization_endpoint else "?"
            authorization_url = f"{metadata.authorization_endpoint}{separator}{urlencode(params)}"
        except BaseException:
            self.state = OAuthFlowState.FAILED
            raise

        self._pending = PendingOAuth(
            server_id=server.id,
            redirect_uri=redirect_uri,
            authorization_endpoint=metadata.authorization_endpoint,
            token_endpoint=metadata.token_endpoint,
            client_id=client_id,
            client_secret=client_secret,
            code_verifier=verifier,
            state=state,
            authorization_url=authorization_url,
            scopes=scopes,
            resource=server.url,
            client_id_registered=registered,
        )
        self.state = OAuthFlowState.AWAITING_CALLBACK
        return self._pending

    def open_browser(self) -> bool:
        if self._pending is None:
            return False
        try:
            return bool(self.browser_opener(self._pending.authorization_url))
        except Exception as e:
            LOGGER.warning(f"Could not open browser: {e}")
            return False

    async def wait_for_callback(self) -> str:
        """Serve the redirect URI until one callback arrives or the timeout hits.

        Returns the authorization code. The pending flow survives a timeout.
        """
        pending = self._require_pending()
        target = urlsplit(pending.redirect_uri)
        host = target.hostname or "127.0.0.1"
        port = target.port or 80
        path = target.path or "/"

        loop = asyncio.get_running_loop()
        result: asyncio.Future = loop.create_future()

        async def handle_callback(request: web.Request) -> web.Response:
            params = request.query
            if result.done():
                return web.Response(text=_CALLBACK_OK_HTML, content_type="text/html")
            try:
                code = extract_code(f"?{request.query_string}", expected_state=pending.state)
                if params.get("state") != pending.state:
                    raise ProtocolError("OAuth state mismatch; restart with /mcp auth.")
            except ProtocolError as e:
                result.set_exception(e)
                return web.Response(
                    text=_CALLBACK_FAIL_HTML.format(reason=e.user_message),
                    content_type="text/html",
                    status=400,
                )
            result.set_result(code)
            return web.Response(text=_CALLBACK_OK_HTML, content_type="text/html")

        app = web.Application()
        app.router.add_get(path, handle_callback)
        runner = web.AppRunner(app)
        await runner.setup()
        try:
            site = web.TCPSite(runner, host, port)
            try:
                await site.start()
            except OSError as e:
                raise ConnectivityError(
                    f"Cannot listen on {host}:{port} for the OAuth callback: {e}"
                ) from e
            LOGGER.info(f"Waiting for OAuth callback on {pending.redirect_uri}")
            try:
                return await asyncio.wait_for(result, timeout=self.timeout_secs)
            except asyncio.TimeoutError:
                self.state = OAuthFlowState.TIMED_OUT
                raise OAuthTimeoutError(
                    f"OAuth callback not received within {self.timeout_secs:.0f}s",
                    f"Callback not received. Paste the redirect URL with /mcp auth-code {pending.server_id} <url>",
                )
        finally:
            await runner.cleanup()

    async def exchange_code(self, code: str, manual: bool = False) -> OAuthToken:
        pending = self._require_pending()
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": pending.redirect_uri,
            "client_id": pending.client_id,
            "code_verifier": pending.code_verifier,
        }
        if pending.client_secret:
            form["client_secret"] = pending.client_secret
        if pending.resource:
            form["resource"] = pending.resource

        try:
            response = await self._http.post(
                pending.token_endpoint, data=form, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Token exchange failed: {e}") from e
        if response.status_code >= 400:
            raise ProtocolError(f"Token endpoint returned {response.status_code}: {response.text[:200]}")
        try:
            data = response.json()
        except ValueError:
            # Some providers answer form-encoded.
            data = {k: v[0] for k, v in parse_qs(response.text).items()}
        access_token = data.get("access_token")
        if not access_token:
            raise ProtocolError("Token response has no access_token")

        token = OAuthToken(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            client_id=pending.client_id,
            expires_in=int(data["expires_in"]) if str(data.get("expires_in", "")).isdigit() else None,
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope"),
        )
        self._pending = None
        self.state = OAuthFlowState.MANUALLY_COMPLETED if manual else OAuthFlowState.COMPLETED
        LOGGER.info(f"OAuth completed for {pending.server_id} ({'manual' if manual else 'callback'})")
        return token

    async def complete_manual(self, server_id: str, raw_input: str) -> OAuthToken:
        if self._pending is None:
            raise StateError("No pending OAuth flow. Run /mcp auth <id> first.")
        if self._pending.server_id != server_id:
            raise StateError(
                f"Pending OAuth is for '{self._pending.server_id}', not '{server_id}'. "
                f"Run /mcp auth {server_id} first."
            )
        code = extract_code(raw_input, expected_state=self._pending.state)
        return await self.exchange_code(code, manual=True)

    async def await_and_exchange(self) -> OAuthToken:
        code = await self.wait_for_callback()
        return await self.exchange_code(code)

    def _require_pending(self) -> PendingOAuth:
        if self._pending is None:
            raise StateError("No pending OAuth flow. Run /mcp auth <id> first.")
        return self._pending

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

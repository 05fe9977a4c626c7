"""Snapshot source backed by a tailscaled LocalAPI unix socket."""

from __future__ import annotations

import asyncio
import json
import re
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog

from sentinel.core.config import TSNetConfig
from sentinel.core.exceptions import FetchError, LoginError
from sentinel.core.types import PeerRecord, SelfRecord, Snapshot, utc_now
from sentinel.source.base import LoginMode, SnapshotSource

logger = structlog.get_logger(__name__)

LOCALAPI_BASE = "http://local-tailscaled.sock/localapi/v0"

# tailscaled reports "never" as Go's zero time.
_ZERO_TIME_PREFIX = "0001-01-01"
_FRACTION = re.compile(r"(\.\d{6})\d+")

# After /start with a key, NeedsLogin may linger briefly before the backend
# picks the key up.
_AUTH_KEY_GRACE_SECS = 5.0


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value or value.startswith(_ZERO_TIME_PREFIX):
        return None
    try:
        parsed = datetime.fromisoformat(_FRACTION.sub(r"\1", value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _short_name(node: dict[str, Any]) -> str:
    dns = str(node.get("DNSName") or "")
    if dns:
        return dns.split(".", 1)[0]
    return str(node.get("HostName") or "")


def _peer_fields(node: dict[str, Any], fallback_id: str = "") -> dict[str, Any]:
    node_id = str(node.get("ID") or fallback_id)
    if not node_id:
        raise FetchError("LocalAPI status has a node without an ID")
    return {
        "id": node_id,
        "name": _short_name(node),
        "addresses": tuple(node.get("TailscaleIPs") or ()),
        "online": bool(node.get("Online", False)),
        "last_seen": _parse_time(node.get("LastSeen")),
        "tags": tuple(node.get("Tags") or ()),
    }


def parse_status(status: dict[str, Any], captured_at: datetime | None = None) -> Snapshot:
    """Convert a LocalAPI ``/status`` body into a Snapshot.

    Raises:
        FetchError: The body is missing required structure.
    """
    self_raw = status.get("Self")
    if not isinstance(self_raw, dict):
        raise FetchError("LocalAPI status has no Self node")
    peers_raw = status.get("Peer") or {}
    if not isinstance(peers_raw, dict):
        raise FetchError("LocalAPI status Peer is not an object")

    tailnet_raw = status.get("CurrentTailnet")
    tailnet = ""
    if isinstance(tailnet_raw, dict):
        tailnet = str(tailnet_raw.get("Name") or tailnet_raw.get("MagicDNSSuffix") or "")

    self_node = SelfRecord(
        **_peer_fields(self_raw),
        version=str(status.get("Version") or ""),
        relay=str(self_raw.get("Relay") or ""),
        backend_state=str(status.get("BackendState") or ""),
    )
    peers = []
    for key, node in peers_raw.items():
        if not isinstance(node, dict):
            raise FetchError(f"LocalAPI status peer {key!r} is not an object")
        peers.append(PeerRecord(**_peer_fields(node, fallback_id=str(key))))

    return Snapshot(
        tailnet=tailnet,
        captured_at=captured_at or utc_now(),
        self_node=self_node,
        peers=tuple(peers),
    )


class TailscaleSource(SnapshotSource):
    """Talks to tailscaled over its LocalAPI socket.

    ``socket`` in the tsnet settings points at the daemon; by default that is
    ``<state_dir>/tailscaled.sock`` for a dedicated userspace tailscaled.

    Usage::

        async with TailscaleSource(settings.tsnet) as source:
            await source.connect(LoginMode.AUTO, settings.tsnet.login_timeout)
            snap = await source.snapshot()
    """

    def __init__(
        self,
        config: TSNetConfig,
        push: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        poll_secs: float = 1.0,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._push = push
        self._transport = transport
        self._poll_secs = poll_secs
        self._monotonic = monotonic
        self._sleep = sleep
        self._http: httpx.AsyncClient | None = None

    @property
    def supports_push(self) -> bool:
        return self._push

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            transport = self._transport or httpx.AsyncHTTPTransport(
                uds=str(self._config.socket_path)
            )
            self._http = httpx.AsyncClient(
                transport=transport,
                base_url=LOCALAPI_BASE,
                timeout=httpx.Timeout(10.0),
                headers={"Sec-Tailscale": "localapi"},
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # ── LocalAPI calls ──────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client().request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise FetchError(
                f"LocalAPI {path} returned {exc.response.status_code}: "
                f"{exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"LocalAPI {path} request failed: {exc!r}") from exc
        return response

    async def status(self) -> dict[str, Any]:
        response = await self._request("GET", "/status")
        try:
            body = response.json()
        except ValueError as exc:
            raise FetchError("LocalAPI /status returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise FetchError("LocalAPI /status returned non-object")
        return body

    async def snapshot(self) -> Snapshot:
        status = await self.status()
        state = status.get("BackendState", "")
        if state != "Running":
            raise FetchError(f"tailscaled backend is {state or 'unknown'}, not Running")
        return parse_status(status)

    async def wait_for_change(self, timeout: float) -> bool:
        if not self._push:
            return False
        try:
            async with asyncio.timeout(timeout):
                async with self._client().stream(
                    "GET", "/watch-ipn-bus", timeout=None
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            notify = json.loads(line)
                        except ValueError:
                            continue
                        if isinstance(notify, dict) and notify.get("NetMap"):
                            return True
        except TimeoutError:
            return False
        except httpx.HTTPError as exc:
            raise FetchError(f"LocalAPI /watch-ipn-bus failed: {exc!r}") from exc
        return False

    # ── Onboarding ──────────────────────────────────────────────

    async def connect(self, mode: LoginMode, timeout: timedelta) -> None:
        """Log in with the configured strategy.

        - ``auth_key``: non-interactive; fails fast on a rejected key.
        - ``interactive``: waits up to *timeout* for the user to follow the
          login URL.
        - ``auto``: auth key first, then interactive only when
          ``allow_interactive_fallback`` is set.

        Raises:
            LoginError: Login failed or timed out.
            FetchError: The LocalAPI was unreachable.
        """
        status = await self.status()
        if status.get("BackendState") == "Running":
            logger.info("tailnet_connected", mode="existing", tailnet=_tailnet_name(status))
            return

        if mode == LoginMode.AUTH_KEY:
            await self._login_auth_key(timeout)
            return
        if mode == LoginMode.INTERACTIVE:
            await self._login_interactive(timeout)
            return

        has_key = bool(self._config.auth_key.get_secret_value())
        if has_key:
            try:
                await self._login_auth_key(timeout)
                return
            except LoginError as exc:
                if not self._config.allow_interactive_fallback:
                    raise
                logger.warning("auth_key_login_failed", error=str(exc), fallback="interactive")
        elif not self._config.allow_interactive_fallback:
            raise LoginError(
                "no auth key configured and interactive fallback is disabled"
            )
        await self._login_interactive(timeout)

    async def _login_auth_key(self, timeout: timedelta) -> None:
        key = self._config.auth_key.get_secret_value()
        if not key:
            raise LoginError("auth_key login requested but no auth key is configured")
        logger.info(
            "tailnet_login",
            mode="auth_key",
            hostname=self._config.hostname,
            key_source=self._config.auth_key_source or "config",
        )
        await self._request(
            "POST",
            "/start",
            json={
                "AuthKey": key,
                "UpdatePrefs": {
                    "Hostname": self._config.hostname,
                    "HostnameSet": True,
                    "WantRunning": True,
                    "WantRunningSet": True,
                },
            },
        )
        await self._wait_running(timeout, key_login=True)

    async def _login_interactive(self, timeout: timedelta) -> None:
        logger.info("tailnet_login", mode="interactive", hostname=self._config.hostname)
        await self._request("POST", "/login-interactive")
        await self._wait_running(timeout, key_login=False)

    async def _wait_running(self, timeout: timedelta, key_login: bool) -> None:
        started = self._monotonic()
        deadline = started + timeout.total_seconds()
        announced_url = ""
        while True:
            status = await self.status()
            state = status.get("BackendState", "")
            auth_url = str(status.get("AuthURL") or "")

            if state == "Running":
                logger.info("tailnet_connected", tailnet=_tailnet_name(status))
                return

            if key_login and state == "NeedsLogin":
                elapsed = self._monotonic() - started
                if auth_url or elapsed >= _AUTH_KEY_GRACE_SECS:
                    raise LoginError("auth key was rejected (backend still needs login)")

            if not key_login and auth_url and auth_url != announced_url:
                announced_url = auth_url
                logger.warning("tailnet_login_required", auth_url=auth_url)

            if self._monotonic() >= deadline:
                raise LoginError(
                    f"login timed out after {timeout.total_seconds():.0f}s "
                    f"(backend state {state or 'unknown'})"
                )
            await self._sleep(self._poll_secs)


def _tailnet_name(status: dict[str, Any]) -> str:
    tailnet = status.get("CurrentTailnet")
    if isinstance(tailnet, dict):
        return str(tailnet.get("Name") or "")
    return ""

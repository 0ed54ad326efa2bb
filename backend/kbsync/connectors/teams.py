"""
Microsoft Teams Adapter
========================
Channel message deltas from Microsoft Graph over httpx.

The opaque cursor is a JSON object mapping ``"<team_id>/<channel_id>"`` to
the Graph ``@odata.deltaLink`` for that channel. Without a cursor every
selected channel is scanned in full, keeping only messages newer than the
configured lookback window.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
import structlog
from bs4 import BeautifulSoup
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from kbsync.connectors.base import RetryAfterWait, SourceAdapter, parse_retry_after
from kbsync.core.errors import ProviderError, SourceAuthError, TransientProviderError
from kbsync.models import ChangeBatch, ChangedItem, ProviderType, TeamsMessageItem

logger = structlog.get_logger()

GRAPH_SCOPE = "https://graph.microsoft.com/.default"


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------
class TokenProvider(ABC):
    @abstractmethod
    async def get_token(self) -> str:
        ...


class StaticTokenProvider(TokenProvider):
    """Uses an access token produced by the OAuth flow."""

    def __init__(self, access_token: str):
        self.access_token = access_token

    async def get_token(self) -> str:
        if not self.access_token:
            raise SourceAuthError("No access token stored for this source", status_code=401)
        return self.access_token


class MsalTokenProvider(TokenProvider):
    """App-only Graph tokens via the MSAL client-credential flow."""

    def __init__(self, tenant_id: str, client_id: str, client_secret: str):
        import msal

        self._app = msal.ConfidentialClientApplication(
            client_id=client_id,
            client_credential=client_secret,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
        )

    async def get_token(self) -> str:
        # msal is synchronous and caches tokens until shortly before expiry
        result = await asyncio.to_thread(self._app.acquire_token_for_client, scopes=[GRAPH_SCOPE])
        token = result.get("access_token")
        if not token:
            raise SourceAuthError(
                f"Graph token acquisition failed: {result.get('error_description') or result.get('error')}",
                status_code=401,
            )
        return token


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def html_to_text(body: str) -> str:
    if not body:
        return ""
    soup = BeautifulSoup(body, "html.parser")
    lines = [line.strip() for line in soup.get_text("\n").splitlines()]
    return "\n".join(line for line in lines if line)


def parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_scope_key(key: str) -> Tuple[str, str]:
    team_id, sep, channel_id = key.partition("/")
    if not sep or not team_id or not channel_id:
        raise ProviderError(f"Invalid Teams channel scope key: {key!r}")
    return team_id, channel_id


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------
class TeamsAdapter(SourceAdapter):
    provider = ProviderType.TEAMS

    def __init__(
        self,
        token_provider: TokenProvider,
        scope: Sequence[str],
        base_url: str = "https://graph.microsoft.com/v1.0",
        max_retries: int = 3,
        retry_base_seconds: float = 0.5,
        first_scan_lookback_hours: int = 24,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.token_provider = token_provider
        self.scope = list(scope)
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.first_scan_lookback_hours = first_scan_lookback_hours
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._channel_names: Dict[str, str] = {}
        # message id -> (team_id, channel_id), filled by list_changes
        self._locations: Dict[str, Tuple[str, str]] = {}

    async def list_changes(self, cursor: Optional[str]) -> ChangeBatch:
        links: Dict[str, str] = json.loads(cursor) if cursor else {}
        cutoff = self._now() - timedelta(hours=self.first_scan_lookback_hours)
        items: List[ChangedItem] = []
        new_links: Dict[str, str] = {}
        total = 0

        for key in self.scope:
            team_id, channel_id = parse_scope_key(key)
            channel_name = await self._channel_name(team_id, channel_id)
            previous = links.get(key)
            url: Optional[str] = previous or (
                f"{self.base_url}/teams/{team_id}/channels/{channel_id}/messages/delta"
            )
            delta_link = previous

            while url:
                page = await self._get_json(url)
                for raw in page.get("value", []):
                    total += 1
                    item = self._normalize(raw, team_id, channel_id, channel_name)
                    if previous is None and item.created_at and item.created_at < cutoff:
                        continue
                    self._locations[item.external_id] = (team_id, channel_id)
                    items.append(item)
                url = page.get("@odata.nextLink")
                delta_link = page.get("@odata.deltaLink", delta_link)

            if delta_link:
                new_links[key] = delta_link

        logger.info("Teams changes listed", channels=len(self.scope), checked=total, items=len(items))
        return ChangeBatch(
            items=items,
            new_cursor=json.dumps(new_links, sort_keys=True) if new_links else None,
            total_checked=total,
        )

    async def fetch_content(self, external_id: str) -> str:
        location = self._locations.get(external_id)
        if location is None:
            raise ProviderError(f"Unknown Teams message {external_id}; list changes first")
        team_id, channel_id = location
        raw = await self._get_json(
            f"{self.base_url}/teams/{team_id}/channels/{channel_id}/messages/{external_id}"
        )
        return html_to_text((raw.get("body") or {}).get("content", ""))

    async def is_in_scope(self, item: ChangedItem, scope_ids: Sequence[str]) -> bool:
        return isinstance(item, TeamsMessageItem) and item.scope_key in scope_ids

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _normalize(
        self, raw: Dict[str, Any], team_id: str, channel_id: str, channel_name: str
    ) -> TeamsMessageItem:
        sender = ((raw.get("from") or {}).get("user") or {}).get("displayName")
        body = raw.get("body") or {}
        content = body.get("content", "")
        if body.get("contentType", "html") == "html":
            content = html_to_text(content)
        mentioned = [
            ((m.get("mentioned") or {}).get("user") or {}).get("displayName")
            for m in raw.get("mentions") or []
        ]
        created = parse_graph_datetime(raw.get("createdDateTime"))
        return TeamsMessageItem(
            external_id=raw["id"],
            title=f"Message from {sender or 'Unknown'} in {channel_name}",
            content=content,
            author=sender,
            created_at=created,
            modified_at=parse_graph_datetime(raw.get("lastModifiedDateTime")) or created,
            source_url=raw.get("webUrl"),
            removed=bool(raw.get("deletedDateTime")),
            team_id=team_id,
            channel_id=channel_id,
            channel_name=channel_name,
            is_system=raw.get("messageType", "message") != "message",
            mentioned=[m for m in mentioned if m],
        )

    async def _channel_name(self, team_id: str, channel_id: str) -> str:
        key = f"{team_id}/{channel_id}"
        if key not in self._channel_names:
            data = await self._get_json(
                f"{self.base_url}/teams/{team_id}/channels/{channel_id}?$select=displayName"
            )
            self._channel_names[key] = data.get("displayName") or channel_id
        return self._channel_names[key]

    async def _get_json(self, url: str) -> Dict[str, Any]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(self.max_retries, 0) + 1),
            wait=RetryAfterWait(self.retry_base_seconds),
            retry=retry_if_exception_type(TransientProviderError),
            reraise=True,
        ):
            with attempt:
                return await self._request(url)
        raise ProviderError(f"Graph request not attempted: {url}")

    async def _request(self, url: str) -> Dict[str, Any]:
        token = await self.token_provider.get_token()
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        try:
            resp = await self._client.get(url, headers={"Authorization": f"Bearer {token}"})
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Graph request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Graph transport error: {e}") from e

        status = resp.status_code
        if status in (401, 403):
            raise SourceAuthError(f"Graph rejected credentials ({status})", status_code=status)
        if status == 429 or status >= 500:
            raise TransientProviderError(
                f"Graph request failed ({status})",
                status_code=status,
                retry_after=parse_retry_after(resp.headers.get("Retry-After")),
            )
        if status >= 400:
            raise ProviderError(f"Graph request failed ({status}): {resp.text[:200]}", status_code=status)
        return resp.json()

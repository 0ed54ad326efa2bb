"""
Teams Adapter Tests
====================
Graph responses are served by an ``httpx.MockTransport``.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from kbsync.connectors.teams import StaticTokenProvider, TeamsAdapter, html_to_text, parse_scope_key
from kbsync.core.errors import ProviderError, SourceAuthError, TransientProviderError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
BASE = "https://graph.test/v1.0"
DELTA_LINK = "https://graph.test/delta?token=abc"


def iso(dt):
    return dt.isoformat().replace("+00:00", "Z")


def message(message_id, created, **overrides):
    data = {
        "id": message_id,
        "createdDateTime": iso(created),
        "lastModifiedDateTime": iso(created),
        "messageType": "message",
        "from": {"user": {"displayName": "Ada Lovelace"}},
        "body": {"contentType": "html", "content": "<p>Deploy today</p><p>Smoke tests first</p>"},
        "webUrl": f"https://teams.test/{message_id}",
        "mentions": [{"mentioned": {"user": {"displayName": "Grace Hopper"}}}],
    }
    data.update(overrides)
    return data


class Graph:
    """Scripted Graph endpoint recording every request path.

    Routes map a path suffix to a response factory, or to a list of factories
    consumed in order.
    """

    def __init__(self, routes):
        self.routes = routes
        self.paths = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        for suffix, responses in self.routes.items():
            if request.url.path.endswith(suffix):
                factory = responses.pop(0) if isinstance(responses, list) else responses
                return factory()
        return httpx.Response(404, json={"error": "not found"})


def adapter_for(graph, **kwargs):
    return TeamsAdapter(
        token_provider=StaticTokenProvider("token"),
        scope=["team-1/channel-1"],
        base_url=BASE,
        retry_base_seconds=0,
        client=httpx.AsyncClient(transport=httpx.MockTransport(graph)),
        now=lambda: NOW,
        **kwargs,
    )


def channel():
    return httpx.Response(200, json={"displayName": "General"})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def test_html_to_text():
    assert html_to_text("<p>Deploy today</p><p>Smoke <b>tests</b> first</p>") == "Deploy today\nSmoke\ntests\nfirst"
    assert html_to_text("") == ""


def test_parse_scope_key():
    assert parse_scope_key("team-1/channel-1") == ("team-1", "channel-1")
    with pytest.raises(ProviderError):
        parse_scope_key("team-1")


# ---------------------------------------------------------------------------
# list_changes
# ---------------------------------------------------------------------------
async def test_full_scan_follows_pages_and_applies_lookback():
    graph = Graph(
        {
            "/channels/channel-1": channel,
            "/messages/delta": lambda: httpx.Response(
                200,
                json={
                    "value": [
                        message("m1", NOW - timedelta(hours=1)),
                        message("m-old", NOW - timedelta(hours=48)),
                        message("m-sys", NOW - timedelta(hours=2), messageType="systemEventMessage"),
                    ],
                    "@odata.nextLink": "https://graph.test/next-page",
                },
            ),
            "/next-page": lambda: httpx.Response(
                200,
                json={
                    "value": [message("m2", NOW - timedelta(hours=3), deletedDateTime=iso(NOW))],
                    "@odata.deltaLink": DELTA_LINK,
                },
            ),
        }
    )
    adapter = adapter_for(graph)

    batch = await adapter.list_changes(None)

    assert [i.external_id for i in batch.items] == ["m1", "m-sys", "m2"]
    assert batch.total_checked == 4
    assert json.loads(batch.new_cursor) == {"team-1/channel-1": DELTA_LINK}

    m1, system, deleted = batch.items
    assert m1.title == "Message from Ada Lovelace in General"
    assert m1.content == "Deploy today\nSmoke tests first"
    assert m1.participants == ["Ada Lovelace", "Grace Hopper"]
    assert m1.scope_key == "team-1/channel-1"
    assert system.is_container is True
    assert deleted.removed is True
    await adapter.aclose()


async def test_incremental_scan_resumes_from_delta_link():
    graph = Graph(
        {
            "/channels/channel-1": channel,
            "/delta": lambda: httpx.Response(
                200,
                json={
                    "value": [message("m-old-edit", NOW - timedelta(days=10))],
                    "@odata.deltaLink": "https://graph.test/delta?token=def",
                },
            ),
        }
    )
    adapter = adapter_for(graph)

    batch = await adapter.list_changes(json.dumps({"team-1/channel-1": DELTA_LINK}))

    # No lookback filter on incremental scans
    assert [i.external_id for i in batch.items] == ["m-old-edit"]
    assert json.loads(batch.new_cursor) == {"team-1/channel-1": "https://graph.test/delta?token=def"}
    assert "/messages/delta" not in " ".join(graph.paths)


async def test_throttling_is_retried():
    graph = Graph(
        {
            "/channels/channel-1": channel,
            "/messages/delta": [
                lambda: httpx.Response(429, headers={"Retry-After": "0"}),
                lambda: httpx.Response(200, json={"value": [], "@odata.deltaLink": DELTA_LINK}),
            ],
        }
    )
    adapter = adapter_for(graph)

    batch = await adapter.list_changes(None)

    assert batch.items == []
    assert graph.paths.count("/v1.0/teams/team-1/channels/channel-1/messages/delta") == 2


async def test_persistent_server_errors_surface():
    graph = Graph(
        {
            "/channels/channel-1": channel,
            "/messages/delta": lambda: httpx.Response(503),
        }
    )
    adapter = adapter_for(graph, max_retries=1)

    with pytest.raises(TransientProviderError):
        await adapter.list_changes(None)


async def test_rejected_credentials():
    graph = Graph({"/channels/channel-1": lambda: httpx.Response(401)})
    adapter = adapter_for(graph)

    with pytest.raises(SourceAuthError):
        await adapter.list_changes(None)


async def test_missing_token():
    with pytest.raises(SourceAuthError):
        await StaticTokenProvider("").get_token()


# ---------------------------------------------------------------------------
# fetch_content / scope
# ---------------------------------------------------------------------------
async def test_fetch_content_after_listing():
    graph = Graph(
        {
            "/channels/channel-1": channel,
            "/messages/delta": lambda: httpx.Response(
                200, json={"value": [message("m1", NOW)], "@odata.deltaLink": DELTA_LINK}
            ),
            "/messages/m1": lambda: httpx.Response(
                200, json={"id": "m1", "body": {"contentType": "html", "content": "<div>Full reply thread</div>"}}
            ),
        }
    )
    adapter = adapter_for(graph)
    batch = await adapter.list_changes(None)

    assert await adapter.fetch_content("m1") == "Full reply thread"
    assert await adapter.is_in_scope(batch.items[0], ["team-1/channel-1"]) is True
    assert await adapter.is_in_scope(batch.items[0], ["team-1/channel-2"]) is False
    with pytest.raises(ProviderError):
        await adapter.fetch_content("unknown")

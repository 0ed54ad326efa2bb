"""
Source Adapter Registry
========================
Maps provider types to adapter builders and produces the per-source adapter
factory consumed by the change detection engine.
"""

import json
from typing import Any, Callable, Dict, Optional, Sequence

import structlog

from kbsync.connectors.base import SourceAdapter
from kbsync.connectors.google_drive import GoogleDriveAdapter
from kbsync.connectors.teams import MsalTokenProvider, StaticTokenProvider, TeamsAdapter
from kbsync.core.errors import SourceAuthError
from kbsync.models import ConnectedSource, ProviderType

logger = structlog.get_logger()

AdapterFactory = Callable[[ConnectedSource], SourceAdapter]


def _build_teams(credentials: Dict[str, Any], settings, scope: Sequence[str]) -> SourceAdapter:
    if credentials.get("access_token"):
        tokens = StaticTokenProvider(credentials["access_token"])
    elif settings.microsoft_client_id and settings.microsoft_client_secret:
        tokens = MsalTokenProvider(
            tenant_id=credentials.get("tenant_id", settings.microsoft_tenant_id),
            client_id=settings.microsoft_client_id,
            client_secret=settings.microsoft_client_secret,
        )
    else:
        raise SourceAuthError("No Microsoft Graph credentials available", status_code=401)

    return TeamsAdapter(
        token_provider=tokens,
        scope=scope,
        base_url=settings.graph_base_url,
        max_retries=settings.provider_max_retries,
        retry_base_seconds=settings.provider_retry_base_seconds,
        first_scan_lookback_hours=settings.first_scan_lookback_hours,
    )


def _build_google_drive(credentials: Dict[str, Any], settings, scope: Sequence[str]) -> SourceAdapter:
    info = credentials or (json.loads(settings.google_credentials_json) if settings.google_credentials_json else None)
    if not info:
        raise SourceAuthError("No Google Drive credentials available", status_code=401)
    return GoogleDriveAdapter.from_credentials(
        info,
        max_retries=settings.provider_max_retries,
        retry_base_seconds=settings.provider_retry_base_seconds,
    )


ADAPTER_REGISTRY: Dict[ProviderType, Callable[..., SourceAdapter]] = {
    ProviderType.TEAMS: _build_teams,
    ProviderType.GOOGLE_DRIVE: _build_google_drive,
}


def get_adapter(
    provider: ProviderType,
    credentials: Optional[Dict[str, Any]],
    settings,
    scope: Sequence[str] = (),
) -> SourceAdapter:
    """Get an adapter instance for a provider."""
    builder = ADAPTER_REGISTRY.get(ProviderType(provider))
    if builder is None:
        raise ValueError(f"Unknown provider: {provider}")
    return builder(credentials or {}, settings, scope)


def adapter_factory_for(settings) -> AdapterFactory:
    def _factory(source: ConnectedSource) -> SourceAdapter:
        return get_adapter(source.provider, source.credentials, settings, source.selected_scope)

    return _factory

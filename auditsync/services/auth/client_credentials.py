from __future__ import annotations

import asyncio
import logging

import httpx

from auditsync.core.config import Settings, get_settings
from auditsync.core.errors import AuthError
from auditsync.domain.events import TenantConfig
from auditsync.services.resilience import RetryPolicy, default_retry_policy, retry_async


logger = logging.getLogger(__name__)

_BODY_LOG_LIMIT = 500


def token_url(tenant: TenantConfig, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    return settings.token_url_template.format(directory_id=tenant.directory_id)


async def get_access_token(
    tenant: TenantConfig,
    *,
    client: httpx.AsyncClient,
    settings: Settings | None = None,
    policy: RetryPolicy | None = None,
) -> str:
    # Exchange tenant client credentials for a bearer token; acquired fresh on every run.
    settings = settings or get_settings()
    payload = {
        "grant_type": "client_credentials",
        "client_id": tenant.client_id,
        "client_secret": tenant.client_secret,
        "scope": settings.token_scope,
    }
    url = token_url(tenant, settings)

    async def _call() -> httpx.Response:
        return await client.post(url, data=payload)

    try:
        response = await retry_async(_call, policy=policy or default_retry_policy(settings))
    except (httpx.HTTPError, asyncio.TimeoutError) as exc:
        raise AuthError(f"Token request for tenant {tenant.label} failed: {exc}") from exc

    if not response.is_success:
        body = response.text
        logger.warning(
            "token_exchange_failed tenant=%s status=%s body=%s",
            tenant.id,
            response.status_code,
            body[:_BODY_LOG_LIMIT],
        )
        raise AuthError(
            f"Token error for tenant {tenant.label} ({tenant.directory_id}): {response.status_code} - {body}",
            status_code=response.status_code,
            body=body,
        )
    try:
        body_json = response.json()
    except ValueError as exc:
        raise AuthError(f"Token response for tenant {tenant.label} is not JSON") from exc
    access_token = body_json.get("access_token") if isinstance(body_json, dict) else None
    if not access_token:
        raise AuthError(f"Token response for tenant {tenant.label} is missing access_token")
    return access_token

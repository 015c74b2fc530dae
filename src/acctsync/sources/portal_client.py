"""
Portal Client - Directory connector for the digital portal API.

Talks to an OAuth2 client-credentials protected HTTP API:
1. Exchanges the source's client id/secret for a bearer token
2. Pages through the organization and user list endpoints
3. Maps the portal's field names onto TeamBuffer / UserBuffer records

Endpoint paths, page size, response envelope keys and field names all come
from the source instance's config blob (see PortalConfig), so a portal
deployment with different naming needs no code change.
"""

import asyncio
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .base_source import (
    AccountSourceInstance,
    AttrInfo,
    BaseDirectoryClient,
    ConfigError,
    TeamBuffer,
    UpstreamFailure,
    UserBuffer,
)


GRANT_TYPE = "client_credentials"
SCOPE = "select"

# Refresh tokens this many seconds before the portal says they expire
TOKEN_EXPIRY_MARGIN = 60.0


class PortalConfig(BaseModel):
    """Per-source settings read from AccountSourceInstance.config"""

    model_config = ConfigDict(extra="ignore")

    token_path: str = "/oauth/token"
    team_path: str = "/api/org/list"
    user_path: str = "/api/user/list"
    page_size: int = Field(default=200, gt=0)
    max_pages: int = Field(default=1000, gt=0)
    org_code: Optional[str] = None
    timeout: float = Field(default=30.0, gt=0)

    # Response envelope
    code_key: str = "code"
    success_codes: List[Any] = Field(default_factory=lambda: [0, 200, "0", "200"])
    data_key: str = "data"
    records_key: str = "records"
    total_key: str = "total"

    # Portal field name for each buffer field
    team_fields: Dict[str, str] = Field(default_factory=lambda: {
        "id": "orgId",
        "name": "orgName",
        "parent_id": "parentId",
        "sort_order": "sort",
    })
    user_fields: Dict[str, str] = Field(default_factory=lambda: {
        "id": "userId",
        "username": "loginName",
        "display_name": "userName",
        "mobile": "mobile",
        "email": "email",
        "team_id": "orgId",
        "status": "status",
    })
    extra_user_attrs: Dict[str, str] = Field(default_factory=dict)
    disabled_status_values: List[str] = Field(default_factory=lambda: ["0", "disabled", "locked"])

    @classmethod
    def from_instance(cls, instance: AccountSourceInstance) -> "PortalConfig":
        try:
            return cls.model_validate(instance.config)
        except ValidationError as e:
            raise ConfigError(f"Invalid portal config for source {instance.id}: {e}") from e


class TokenProvider:
    """
    Client-credentials token exchange with an in-process cache.

    Tokens are cached per source instance until shortly before the
    ``expires_in`` the portal reports. The cache is shared by all worker
    threads, each of which drives its own event loop.
    """

    def __init__(self):
        self._cache: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self.logger = structlog.get_logger(__name__)

    async def get_token(
        self,
        session: aiohttp.ClientSession,
        instance: AccountSourceInstance,
        config: Optional[PortalConfig] = None,
    ) -> str:
        """
        Get a bearer token for the source.

        Args:
            session: Open HTTP session
            instance: Source whose credentials to use
            config: Parsed portal config (parsed from the instance if None)

        Returns:
            Access token string

        Raises:
            UpstreamFailure: If the token endpoint fails or returns no token
        """
        with self._lock:
            cached = self._cache.get(instance.id)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        config = config or PortalConfig.from_instance(instance)
        url = _join_url(instance.base_url, config.token_path)
        form = {
            "grant_type": GRANT_TYPE,
            "scope": SCOPE,
            "client_id": instance.client_id,
            "client_secret": instance.client_secret.get_secret_value(),
        }

        try:
            async with session.post(url, data=form) as response:
                if response.status >= 400:
                    raise UpstreamFailure(
                        f"Token request failed with HTTP {response.status}",
                        status_code=response.status,
                    )
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise UpstreamFailure(f"Token request failed: {e}") from e

        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise UpstreamFailure("Token response has no access_token")

        expires_in = body.get("expires_in")
        if expires_in:
            try:
                expires_at = time.monotonic() + float(expires_in) - TOKEN_EXPIRY_MARGIN
            except (TypeError, ValueError):
                expires_at = 0.0
            with self._lock:
                self._cache[instance.id] = (token, expires_at)

        self.logger.debug("token_acquired", source=instance.id, expires_in=expires_in)
        return token

    def invalidate(self, source_inst_id: str):
        """Drop the cached token for a source"""
        with self._lock:
            self._cache.pop(source_inst_id, None)


class PortalDirectoryClient(BaseDirectoryClient):
    """
    Directory client for the digital portal.

    Example:
        >>> client = PortalDirectoryClient()
        >>> records = await client.fetch_teams(instance)
        >>> teams = client.convert_teams(records, instance)
    """

    def __init__(self, token_provider: Optional[TokenProvider] = None):
        """
        Initialize the portal client.

        Args:
            token_provider: Shared token provider (a new one if None)
        """
        self.token_provider = token_provider or TokenProvider()
        self.logger = structlog.get_logger(__name__)

    async def fetch_teams(self, instance: AccountSourceInstance) -> List[Dict[str, Any]]:
        config = PortalConfig.from_instance(instance)
        params: Dict[str, Any] = {}
        if config.org_code:
            params["orgCode"] = config.org_code

        records = await self._fetch_all_pages(instance, config, config.team_path, params)
        self.logger.info("portal_teams_fetched", source=instance.id, count=len(records))
        return records

    async def fetch_users(
        self,
        instance: AccountSourceInstance,
        scan_all: bool = True,
    ) -> List[Dict[str, Any]]:
        config = PortalConfig.from_instance(instance)
        params: Dict[str, Any] = {}
        if config.org_code:
            params["orgCode"] = config.org_code

        if not scan_all:
            if instance.last_synced_at is not None:
                params["updateTime"] = instance.last_synced_at.strftime("%Y-%m-%d %H:%M:%S")
            else:
                self.logger.info("incremental_fetch_without_watermark", source=instance.id)

        records = await self._fetch_all_pages(instance, config, config.user_path, params)
        self.logger.info(
            "portal_users_fetched",
            source=instance.id,
            count=len(records),
            scan_all=scan_all,
        )
        return records

    async def _fetch_all_pages(
        self,
        instance: AccountSourceInstance,
        config: PortalConfig,
        path: str,
        params: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        """
        Page through a list endpoint.

        Stops on an empty or short page, once the reported total is reached,
        or after ``max_pages`` pages.
        """
        url = _join_url(instance.base_url, path)
        timeout = aiohttp.ClientTimeout(total=config.timeout)
        all_records: List[Dict[str, Any]] = []

        async with aiohttp.ClientSession(timeout=timeout) as session:
            token = await self.token_provider.get_token(session, instance, config)
            headers = {"Authorization": f"Bearer {token}"}

            for page_no in range(1, config.max_pages + 1):
                page_params = dict(params, pageNo=page_no, pageSize=config.page_size)
                records, total = await self._fetch_page(
                    session, url, headers, page_params, config, instance
                )
                all_records.extend(records)

                if len(records) < config.page_size:
                    break
                if total is not None and len(all_records) >= total:
                    break
            else:
                self.logger.warning(
                    "portal_page_limit_reached",
                    source=instance.id,
                    path=path,
                    max_pages=config.max_pages,
                )

        return all_records

    async def _fetch_page(
        self,
        session: aiohttp.ClientSession,
        url: str,
        headers: Dict[str, str],
        params: Dict[str, Any],
        config: PortalConfig,
        instance: AccountSourceInstance,
    ) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        try:
            async with session.get(url, headers=headers, params=params) as response:
                if response.status == 401:
                    self.token_provider.invalidate(instance.id)
                if response.status >= 400:
                    raise UpstreamFailure(
                        f"GET {url} failed with HTTP {response.status}",
                        status_code=response.status,
                    )
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise UpstreamFailure(f"GET {url} failed: {e}") from e

        return _unwrap_envelope(body, config, url)

    def convert_teams(
        self,
        records: List[Dict[str, Any]],
        instance: AccountSourceInstance,
    ) -> List[TeamBuffer]:
        config = PortalConfig.from_instance(instance)
        fields = config.team_fields
        teams = []

        for record in records:
            team_id = _as_str(record.get(fields.get("id", "")))
            if not team_id:
                self.logger.warning("team_record_without_id", source=instance.id, record=record)
                continue

            teams.append(TeamBuffer(
                source_team_id=team_id,
                name=_as_str(record.get(fields.get("name", ""))) or team_id,
                source_inst_id=instance.id,
                parent_source_team_id=_as_str(record.get(fields.get("parent_id", ""))),
                sort_order=_as_int(record.get(fields.get("sort_order", ""))),
                raw=record,
            ))

        return teams

    def convert_users(
        self,
        records: List[Dict[str, Any]],
        instance: AccountSourceInstance,
    ) -> List[UserBuffer]:
        config = PortalConfig.from_instance(instance)
        fields = config.user_fields
        disabled = {value.lower() for value in config.disabled_status_values}
        users = []

        for record in records:
            user_id = _as_str(record.get(fields.get("id", "")))
            if not user_id:
                self.logger.warning("user_record_without_id", source=instance.id)
                continue

            raw_status = _as_str(record.get(fields.get("status", "")))
            status = "disabled" if raw_status and raw_status.lower() in disabled else "active"

            users.append(UserBuffer(
                source_user_id=user_id,
                username=_as_str(record.get(fields.get("username", ""))) or user_id,
                source_inst_id=instance.id,
                display_name=_as_str(record.get(fields.get("display_name", ""))),
                mobile=_as_str(record.get(fields.get("mobile", ""))),
                email=_as_str(record.get(fields.get("email", ""))),
                team_ids=_as_list(record.get(fields.get("team_id", ""))),
                status=status,
                attrs={
                    key: record.get(source_field)
                    for key, source_field in config.extra_user_attrs.items()
                    if source_field in record
                },
                raw=record,
            ))

        return users

    def get_user_attrs(self, instance: AccountSourceInstance) -> List[AttrInfo]:
        config = PortalConfig.from_instance(instance)
        attrs = [
            AttrInfo(key=key, label=_label(key), source_field=source_field)
            for key, source_field in config.user_fields.items()
        ]
        attrs.extend(
            AttrInfo(key=key, label=_label(key), source_field=source_field)
            for key, source_field in config.extra_user_attrs.items()
        )
        return attrs


def _unwrap_envelope(
    body: Any,
    config: PortalConfig,
    url: str,
) -> Tuple[List[Dict[str, Any]], Optional[int]]:
    """Pull (records, total) out of a portal list response"""
    if isinstance(body, list):
        return body, None

    if not isinstance(body, dict):
        raise UpstreamFailure(f"Unexpected response from {url}: {type(body).__name__}")

    if config.code_key in body and body[config.code_key] not in config.success_codes:
        raise UpstreamFailure(
            f"Portal returned code {body[config.code_key]!r} for {url}: "
            f"{body.get('msg') or body.get('message') or ''}".rstrip(": ")
        )

    data = body.get(config.data_key)
    if data is None:
        return [], None
    if isinstance(data, list):
        return data, None
    if isinstance(data, dict):
        records = data.get(config.records_key) or []
        if not isinstance(records, list):
            raise UpstreamFailure(f"Malformed records in response from {url}")
        total = data.get(config.total_key)
        return records, _as_int(total) if total is not None else None

    raise UpstreamFailure(f"Malformed data in response from {url}")


def _join_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None and str(item)]
    return [part.strip() for part in str(value).split(",") if part.strip()]


def _label(key: str) -> str:
    return key.replace("_", " ").title()

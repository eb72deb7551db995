"""Async GitHub REST client for secrets, environments and rate limits.

Thin wrapper over ``httpx.AsyncClient`` that:
    - addresses each secret scope (actions, codespaces, dependabot,
      environment:<name>) under the configured repository
    - reports ``x-ratelimit-*`` headers of every response to a callback
    - maps error responses onto the engine's exception hierarchy

Error mapping:
    403/429 with x-ratelimit-remaining: 0  -> RateLimitExhausted
    403/429 secondary limit or Retry-After -> SecondaryRateLimit
    403 otherwise                          -> PermissionDenied
    401                                    -> CredentialMissing
    422 on a secret PUT naming the key id  -> StaleKeyError
    422 on a secret PUT otherwise          -> SecretRejected
    transport failure, 5xx, other codes    -> RemoteApiError

Retries are not done here; see ``retry.run_with_retry``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from .exceptions import (
    CredentialMissing,
    PermissionDenied,
    RateLimitExhausted,
    RemoteApiError,
    ScopeNotConfigured,
    SecondaryRateLimit,
    SecretRejected,
    StaleKeyError,
)
from .models import EncryptedValue, QuotaType, Scope, ScopeKind, ScopePublicKey
from .quota import RateLimitWindow

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
API_VERSION = "2022-11-28"

# 422 bodies that blame the sealing key rather than the name or payload
STALE_KEY_PATTERN = re.compile(r"key[_ ]?id|public key", re.IGNORECASE)

RateLimitCallback = Callable[[QuotaType, Mapping[str, str]], Awaitable[None]]


class GitHubClient:
    """REST client bound to one repository.

    Args:
        token: Access token with secrets and environments write permission
        owner: Repository owner
        repo: Repository name
        api_url: API base URL (override for GitHub Enterprise or tests)
        timeout: Request timeout in seconds
        on_rate_limit: Callback receiving the quota class and headers of
            every response

    Example:
        >>> async with GitHubClient(token, "acme", "api") as client:
        ...     key = await client.get_public_key(Scope.parse("actions"))
    """

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        on_rate_limit: RateLimitCallback | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.on_rate_limit = on_rate_limit
        self._client = http_client or httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": API_VERSION,
                "User-Agent": "secrets-sync-mcp",
            },
        )

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def repo_path(self) -> str:
        return f"/repos/{quote(self.owner, safe='')}/{quote(self.repo, safe='')}"

    def secrets_path(self, scope: Scope) -> str:
        if scope.kind is ScopeKind.ENVIRONMENT:
            env = quote(scope.environment or "", safe="")
            return f"{self.repo_path}/environments/{env}/secrets"
        return f"{self.repo_path}/{scope.kind.value}/secrets"

    def environment_path(self, name: str) -> str:
        return f"{self.repo_path}/environments/{quote(name, safe='')}"

    # -------------------------------------------------------------------------
    # Secrets
    # -------------------------------------------------------------------------

    async def get_public_key(self, scope: Scope) -> ScopePublicKey:
        """Fetch the sealing key of a scope.

        Raises:
            ScopeNotConfigured: If the scope does not exist for the repository
        """
        path = f"{self.secrets_path(scope)}/public-key"
        try:
            response = await self.request("GET", path, quota_type=QuotaType.CORE)
        except RemoteApiError as e:
            if e.status_code == 404:
                raise ScopeNotConfigured(str(scope)) from e
            raise

        data = response.json()
        return ScopePublicKey(key_id=str(data["key_id"]), key=data["key"])

    async def put_secret(self, scope: Scope, name: str, encrypted: EncryptedValue) -> bool:
        """Create or update a secret.

        Returns:
            True if the secret was created, False if it was updated

        Raises:
            StaleKeyError: If the platform rejected the key id
            SecretRejected: If the platform rejected the name or body (other 422s)
            ScopeNotConfigured: If the scope (e.g. environment) does not exist
        """
        path = f"{self.secrets_path(scope)}/{quote(name, safe='')}"
        body = {"encrypted_value": encrypted.encrypted_value, "key_id": encrypted.key_id}
        try:
            response = await self.request("PUT", path, json=body, quota_type=QuotaType.SECRETS)
        except RemoteApiError as e:
            if e.status_code == 422:
                if STALE_KEY_PATTERN.search(e.details):
                    raise StaleKeyError(str(scope), encrypted.key_id) from e
                raise SecretRejected(str(scope), name, e.details) from e
            if e.status_code == 404:
                raise ScopeNotConfigured(str(scope)) from e
            raise

        return response.status_code == 201

    # -------------------------------------------------------------------------
    # Environments
    # -------------------------------------------------------------------------

    async def get_environment(self, name: str) -> dict[str, Any] | None:
        """Fetch an environment, or None if it does not exist."""
        try:
            response = await self.request("GET", self.environment_path(name))
        except RemoteApiError as e:
            if e.status_code == 404:
                return None
            raise
        return response.json()

    async def put_environment(self, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Create or update an environment and its protection rules."""
        response = await self.request("PUT", self.environment_path(name), json=payload)
        return response.json()

    # -------------------------------------------------------------------------
    # Rate limits
    # -------------------------------------------------------------------------

    async def get_rate_limits(self) -> dict[QuotaType, RateLimitWindow]:
        """Current windows per quota class (GET /rate_limit, not itself rate limited).

        Secret writes draw from the core window, so the secrets class is
        seeded with the core values.
        """
        response = await self.request("GET", "/rate_limit", report_rate_limit=False)
        resources = response.json().get("resources", {})

        windows: dict[QuotaType, RateLimitWindow] = {}
        for quota_type, resource in (
            (QuotaType.CORE, "core"),
            (QuotaType.SECRETS, "core"),
            (QuotaType.GRAPHQL, "graphql"),
        ):
            data = resources.get(resource)
            if not data:
                continue
            windows[quota_type] = RateLimitWindow(
                remaining=int(data["remaining"]),
                limit=int(data["limit"]),
                reset_at=datetime.fromtimestamp(int(data["reset"]), tz=UTC),
            )
        return windows

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,  # noqa: ANN401
        params: dict[str, Any] | None = None,
        quota_type: QuotaType = QuotaType.CORE,
        report_rate_limit: bool = True,
    ) -> httpx.Response:
        """Send a request and map error responses to exceptions."""
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            raise RemoteApiError(None, path, f"request timed out: {e}") from e
        except httpx.TransportError as e:
            raise RemoteApiError(None, path, f"network error: {e}") from e

        if report_rate_limit and self.on_rate_limit is not None:
            await self.on_rate_limit(quota_type, response.headers)

        if response.is_success:
            return response

        self._raise_for_response(response, path, quota_type)
        return response

    @staticmethod
    def _raise_for_response(response: httpx.Response, path: str, quota_type: QuotaType) -> None:
        message = _error_message(response)
        status = response.status_code

        if status in (403, 429):
            headers = response.headers
            if headers.get("x-ratelimit-remaining") == "0":
                reset = headers.get("x-ratelimit-reset")
                reset_at = (
                    datetime.fromtimestamp(int(reset), tz=UTC)
                    if reset and reset.isdigit()
                    else datetime.now(UTC)
                )
                limit = int(headers.get("x-ratelimit-limit", "0") or 0)
                raise RateLimitExhausted(quota_type.value, 0, limit, reset_at)

            retry_after = headers.get("retry-after")
            is_secondary = "secondary rate limit" in message.lower()
            if retry_after is not None or status == 429 or is_secondary:
                seconds = float(retry_after) if retry_after and retry_after.isdigit() else None
                raise SecondaryRateLimit(seconds)

            raise PermissionDenied(path, message)

        if status == 401:
            raise CredentialMissing("GITHUB_TOKEN", f"GitHub rejected the token: {message}")

        raise RemoteApiError(status, path, message)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase

    if isinstance(data, dict):
        message = str(data.get("message", ""))
        errors = data.get("errors")
        if errors:
            message += f" {errors}"
        return message.strip() or response.reason_phrase
    return response.reason_phrase


__all__ = ["API_VERSION", "DEFAULT_API_URL", "GitHubClient", "RateLimitCallback"]

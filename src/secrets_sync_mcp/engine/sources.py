"""Secret sources: where plaintext values come from before distribution.

Sources:
    - SecretSource: Abstract base class defining the source interface
    - EnvVarSecretSource: Reads SECRETS_SYNC_SECRET_* environment variables
    - DotenvSecretSource: Reads a local .env file via python-dotenv

Names are returned exactly as the distributor expects them
(``DATABASE_URL_DEV``); classification happens later.

Example:
    >>> source = DotenvSecretSource(".env")
    >>> secrets = await source.load()
    >>> sorted(secrets)
    ['API_KEY', 'DATABASE_URL_DEV']
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path

from dotenv import dotenv_values

from .exceptions import SecretSourceError

logger = logging.getLogger(__name__)

DEFAULT_ENV_PREFIX = "SECRETS_SYNC_SECRET_"


class SecretSource(ABC):
    """Abstract base class for secret sources.

    All methods are async so remote sources can be added without changing
    callers.
    """

    @abstractmethod
    async def load(self, names: Iterable[str] | None = None) -> dict[str, str]:
        """Return name -> value for all secrets, or only for ``names``.

        Names not present in the source are omitted from the result.

        Raises:
            SecretSourceError: If the source cannot be read
        """
        ...

    async def list_names(self) -> list[str]:
        return sorted(await self.load())

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable location of the source (never contains values)."""
        ...


class EnvVarSecretSource(SecretSource):
    """Secret source that reads prefixed environment variables.

    Environment Variable Format:
        SECRETS_SYNC_SECRET_{NAME} = secret_value

    Examples:
        SECRETS_SYNC_SECRET_DATABASE_URL_DEV=postgres://...
        SECRETS_SYNC_SECRET_STRIPE_KEY=sk_live_...

    Attributes:
        prefix: Environment variable prefix (default: "SECRETS_SYNC_SECRET_")
    """

    def __init__(self, prefix: str = DEFAULT_ENV_PREFIX) -> None:
        self.prefix = prefix

    @property
    def description(self) -> str:
        return f"environment variables {self.prefix}*"

    async def load(self, names: Iterable[str] | None = None) -> dict[str, str]:
        secrets = {
            env_var_name[len(self.prefix) :]: value
            for env_var_name, value in os.environ.items()
            if env_var_name.startswith(self.prefix) and len(env_var_name) > len(self.prefix)
        }
        return _select(secrets, names)


class DotenvSecretSource(SecretSource):
    """Secret source backed by a local .env file.

    Parsing follows python-dotenv: comments and blank lines are ignored,
    surrounding quotes are stripped and ``export`` prefixes are accepted.
    Keys declared without a value are skipped with a warning. The process
    environment is never modified.
    """

    def __init__(self, path: str | Path = ".env") -> None:
        self.path = Path(path).expanduser()

    @property
    def description(self) -> str:
        return str(self.path)

    async def load(self, names: Iterable[str] | None = None) -> dict[str, str]:
        if not self.path.is_file():
            raise SecretSourceError(str(self.path), "file not found")

        try:
            raw = dotenv_values(self.path, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise SecretSourceError(str(self.path), str(e)) from e

        secrets: dict[str, str] = {}
        for name, value in raw.items():
            if value is None:
                logger.warning(f"Skipping {name} in {self.path}: no value assigned")
                continue
            secrets[name] = value

        logger.info(f"Loaded {len(secrets)} secrets from {self.path}")
        return _select(secrets, names)


async def collect(
    source: SecretSource, names: Iterable[str] | None = None
) -> tuple[dict[str, str], list[str]]:
    """Load values, also returning the requested names the source does not hold."""
    if names is None:
        return await source.load(), []

    requested = list(dict.fromkeys(names))
    secrets = await source.load(requested)
    return secrets, [name for name in requested if name not in secrets]


def _select(secrets: dict[str, str], names: Iterable[str] | None) -> dict[str, str]:
    if names is None:
        return secrets
    return {name: secrets[name] for name in names if name in secrets}


__all__ = [
    "DEFAULT_ENV_PREFIX",
    "DotenvSecretSource",
    "EnvVarSecretSource",
    "SecretSource",
    "collect",
]

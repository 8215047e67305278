from __future__ import annotations

import os
from typing import Optional, Protocol

from dotenv import dotenv_values

from otpgate.service.errors import ConfigurationError


class SecretSource(Protocol):
    async def get_secret(self, name: str) -> Optional[str]: ...

    def get_secret_sync(self, name: str) -> Optional[str]: ...


class EnvSecretSource:
    """Reads secrets from the process environment, then a ``.env`` file.

    Empty values count as missing.
    """

    def __init__(self, env_file: Optional[str] = ".env") -> None:
        self._file_values = dotenv_values(env_file) if env_file else {}

    def get_secret_sync(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = os.environ.get(name) or self._file_values.get(name)
        return value or default

    async def get_secret(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.get_secret_sync(name, default)

    def get_required_secret_sync(self, name: str) -> str:
        value = self.get_secret_sync(name)
        if not value:
            raise ConfigurationError(f"Required secret {name} not found")
        return value

    async def get_required_secret(self, name: str) -> str:
        return self.get_required_secret_sync(name)


class StaticSecretSource:
    """Fixed mapping of secrets; used when secrets are injected by the host."""

    def __init__(self, values: dict[str, str]) -> None:
        self._values = dict(values)

    def get_secret_sync(self, name: str) -> Optional[str]:
        return self._values.get(name) or None

    async def get_secret(self, name: str) -> Optional[str]:
        return self.get_secret_sync(name)


__all__ = ["SecretSource", "EnvSecretSource", "StaticSecretSource"]

"""
Secret resolution and masking.
"""

import os
import re
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Mapping, Optional

from orchestrator.src.errors import SecretNotFoundError

MASK = "****"


class SecretResolver(ABC):
    """Looks up credential values by id."""

    @abstractmethod
    def resolve(self, credential_id: str) -> str:
        """Return the secret value or raise SecretNotFoundError."""

    def bind(self, credential_ids: Iterable[str]) -> "SecretBindings":
        return SecretBindings({cid: self.resolve(cid) for cid in credential_ids})


class EnvSecretResolver(SecretResolver):
    """Reads PIPELINEX_SECRET_<ID> environment variables."""

    def __init__(self, prefix: str = "PIPELINEX_SECRET_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def resolve(self, credential_id: str) -> str:
        key = self.prefix + env_name(credential_id)
        value = self._environ.get(key)
        if value is None:
            raise SecretNotFoundError(f"Credential '{credential_id}' not found (expected ${key})")
        return value


class StaticSecretResolver(SecretResolver):
    def __init__(self, secrets: Mapping[str, str]):
        self._secrets = dict(secrets)

    def resolve(self, credential_id: str) -> str:
        try:
            return self._secrets[credential_id]
        except KeyError:
            raise SecretNotFoundError(f"Credential '{credential_id}' not found") from None


class SecretBindings:
    """Secret values bound to one step. Never persisted; repr is masked."""

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self._values = dict(values or {})

    def __repr__(self) -> str:
        return f"SecretBindings({sorted(self._values)})"

    def __bool__(self) -> bool:
        return bool(self._values)

    def __iter__(self):
        return iter(self._values)

    def get(self, credential_id: str) -> str:
        return self._values[credential_id]

    def as_env(self) -> Dict[str, str]:
        """Environment variables exposing the secrets, one per credential id."""
        return {env_name(cid): value for cid, value in self._values.items()}

    def mask(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return text
        # Longest first so overlapping values are fully hidden
        for value in sorted(self._values.values(), key=len, reverse=True):
            if value:
                text = text.replace(value, MASK)
        return text


def env_name(credential_id: str) -> str:
    """Credential id as an environment variable name (docker-hub -> DOCKER_HUB)."""
    return re.sub(r"[^A-Za-z0-9]", "_", credential_id).upper()

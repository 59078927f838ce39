"""
Environment-backed secret store
"""

import os
from typing import Any, Mapping, Optional

import structlog

from config.settings import Settings, settings as default_settings
from .execution.exceptions import SecretResolutionError

logger = structlog.get_logger(__name__)


class EnvironmentSecretStore:
    """
    Resolves secrets from environment variables

    ``environment`` secrets read the key directly. ``vault`` and
    ``aws_secrets`` read prefixed variables (``VAULT_<KEY>``,
    ``AWS_SECRET_<KEY>``) until a real backend client is wired in.
    """

    def __init__(
        self,
        environ: Optional[Mapping[str, str]] = None,
        settings: Optional[Settings] = None
    ):
        self.environ = environ if environ is not None else os.environ
        self.settings = settings or default_settings

    async def resolve(self, source: str, key: str, **options: Any) -> str:
        if source == "environment":
            name = key
        elif source == "vault":
            name = f"{self.settings.VAULT_ENV_PREFIX}{self._normalize(key)}"
        elif source == "aws_secrets":
            name = f"{self.settings.AWS_SECRET_ENV_PREFIX}{self._normalize(key)}"
        else:
            raise SecretResolutionError(f"Unsupported secret source: {source}")

        value = self.environ.get(name)
        if value is None:
            logger.warning("secret_not_found", source=source, secret_key=key)
            raise SecretResolutionError(f"Secret {key} not found in {source}")
        return value

    @staticmethod
    def _normalize(key: str) -> str:
        return key.upper().replace("-", "_").replace("/", "_")

"""
Client secret providers for the identity provider application.

The sync core never holds the raw secret outside of a ClientSecret handle.
Providers resolve the secret on demand from an environment variable, a file
(e.g. a mounted container secret) or an inline configuration value.
"""

import os
import logging
from abc import ABC, abstractmethod

from ou_group_sync.config import IdentityProviderSettings
from ou_group_sync.errors import SetupError

logger = logging.getLogger(__name__)


class ClientSecret:
    """Opaque credential handle. Its repr and str never expose the value."""

    __slots__ = ('_value',)

    def __init__(self, value: str):
        if not value:
            raise SetupError("Client secret is empty")
        self._value = value

    def reveal(self) -> str:
        """Return the raw secret for building a token request."""
        return self._value

    def __repr__(self):
        return '<ClientSecret ****>'

    __str__ = __repr__


class SecretProvider(ABC):
    """Source of the application client secret."""

    @abstractmethod
    def get_client_secret(self) -> ClientSecret:
        """
        Resolve the client secret.

        Raises:
            SetupError: If the secret cannot be obtained
        """
        pass

    @abstractmethod
    def describe(self) -> str:
        """Human readable origin of the secret, safe for logging."""
        pass


class EnvironmentSecretProvider(SecretProvider):
    """Reads the secret from an environment variable."""

    def __init__(self, env_var: str):
        self.env_var = env_var

    def get_client_secret(self) -> ClientSecret:
        value = os.getenv(self.env_var)
        if not value:
            raise SetupError(f"Client secret environment variable {self.env_var} is not set")
        return ClientSecret(value)

    def describe(self) -> str:
        return f"environment variable {self.env_var}"


class FileSecretProvider(SecretProvider):
    """Reads the secret from a file, stripping surrounding whitespace."""

    def __init__(self, path: str):
        self.path = path

    def get_client_secret(self) -> ClientSecret:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                value = f.read().strip()
        except OSError as e:
            raise SetupError(f"Cannot read client secret file {self.path}: {e}")
        if not value:
            raise SetupError(f"Client secret file {self.path} is empty")
        return ClientSecret(value)

    def describe(self) -> str:
        return f"file {self.path}"


class StaticSecretProvider(SecretProvider):
    """Holds a secret supplied directly, e.g. inline in the config file."""

    def __init__(self, value: str):
        self._secret = ClientSecret(value)

    def get_client_secret(self) -> ClientSecret:
        return self._secret

    def describe(self) -> str:
        return "inline configuration value"


def create_secret_provider(settings: IdentityProviderSettings) -> SecretProvider:
    """Pick the secret provider implied by the identity provider settings."""
    if settings.client_secret_file:
        provider = FileSecretProvider(settings.client_secret_file)
    elif settings.client_secret:
        logger.warning("Client secret is stored inline in the configuration file; "
                       "prefer client_secret_env or client_secret_file")
        provider = StaticSecretProvider(settings.client_secret)
    else:
        provider = EnvironmentSecretProvider(settings.client_secret_env)

    logger.debug(f"Client secret will be read from {provider.describe()}")
    return provider

"""
Configuration loading and management for OU Group Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. The validated result is frozen into a SyncSettings
instance that is handed to the orchestrator and never mutated afterwards.
"""

import os
import re
import copy
import yaml
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Any, Mapping, Optional

from ou_group_sync.errors import ConfigurationError

logger = logging.getLogger(__name__)

GUID_PATTERN = re.compile(r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$')
DOMAIN_PATTERN = re.compile(r'^(?=.{1,253}$)([A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,63}$')
ATTRIBUTE_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9]*$')

DEFAULT_DESCRIPTION_TEMPLATE = "Dynamic device group for organizational unit {distinguished_name}"
DEFAULT_SECRET_ENV = 'ENTRA_CLIENT_SECRET'


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.bind_password': 'DIRECTORY_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        # Directory configuration
        directory = self.config.get('directory') or {}
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not directory.get(field):
                errors.append(f"Missing required directory field: {field}")
        server_url = directory.get('server_url')
        if server_url and not str(server_url).lower().startswith(('ldap://', 'ldaps://')):
            errors.append(f"directory.server_url must start with ldap:// or ldaps://: {server_url}")

        # Identity provider configuration
        idp = self.config.get('identity_provider') or {}
        tenant_id = idp.get('tenant_id')
        if not tenant_id:
            errors.append("Missing required identity_provider field: tenant_id")
        elif not (GUID_PATTERN.match(str(tenant_id)) or DOMAIN_PATTERN.match(str(tenant_id))):
            errors.append(f"identity_provider.tenant_id must be a GUID or domain name: {tenant_id}")

        client_id = idp.get('client_id')
        if not client_id:
            errors.append("Missing required identity_provider field: client_id")
        elif not GUID_PATTERN.match(str(client_id)):
            errors.append(f"identity_provider.client_id must be a GUID: {client_id}")

        secret_sources = [key for key in ('client_secret', 'client_secret_file') if idp.get(key)]
        if len(secret_sources) > 1:
            errors.append("Only one of identity_provider.client_secret or client_secret_file may be set")

        # Group naming configuration
        groups = self.config.get('groups') or {}
        prefix = groups.get('name_prefix')
        if not isinstance(prefix, str) or not prefix.strip():
            errors.append("Missing required groups field: name_prefix")

        attribute = groups.get('device_attribute')
        if not attribute:
            errors.append("Missing required groups field: device_attribute")
        elif not ATTRIBUTE_PATTERN.match(str(attribute)):
            errors.append(f"groups.device_attribute is not a valid attribute name: {attribute}")

        template = groups.get('description_template')
        if template:
            try:
                str(template).format(name='', distinguished_name='')
            except (KeyError, IndexError, ValueError) as e:
                errors.append(f"groups.description_template is invalid: {e}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        directory_defaults = {
            'search_base': '',
            'start_tls': False,
            'verify_ssl': True,
            'ca_cert_file': None,
            'connection_timeout': 10,
            'receive_timeout': 10
        }
        directory_config = self.config.setdefault('directory', {})
        for key, value in directory_defaults.items():
            directory_config.setdefault(key, value)

        idp_defaults = {
            'client_secret_env': DEFAULT_SECRET_ENV,
            'client_secret_file': None,
            'client_secret': None,
            'authority': 'https://login.microsoftonline.com',
            'graph_url': 'https://graph.microsoft.com',
            'verify_ssl': True,
            'timeout': 30
        }
        idp_config = self.config.setdefault('identity_provider', {})
        for key, value in idp_defaults.items():
            idp_config.setdefault(key, value)

        groups_config = self.config.setdefault('groups', {})
        groups_config.setdefault('description_template', DEFAULT_DESCRIPTION_TEMPLATE)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


@dataclass(frozen=True)
class DirectorySettings:
    server_url: str
    bind_dn: str
    bind_password: str
    search_base: str = ''
    start_tls: bool = False
    verify_ssl: bool = True
    ca_cert_file: Optional[str] = None
    connection_timeout: int = 10
    receive_timeout: int = 10

    @property
    def use_ssl(self) -> bool:
        return self.server_url.lower().startswith('ldaps://')

    def __repr__(self):
        return (f"DirectorySettings(server_url={self.server_url!r}, bind_dn={self.bind_dn!r}, "
                f"search_base={self.search_base!r})")


@dataclass(frozen=True)
class IdentityProviderSettings:
    tenant_id: str
    client_id: str
    client_secret_env: str = DEFAULT_SECRET_ENV
    client_secret_file: Optional[str] = None
    client_secret: Optional[str] = None
    authority: str = 'https://login.microsoftonline.com'
    graph_url: str = 'https://graph.microsoft.com'
    verify_ssl: bool = True
    timeout: int = 30

    def __repr__(self):
        return (f"IdentityProviderSettings(tenant_id={self.tenant_id!r}, client_id={self.client_id!r}, "
                f"graph_url={self.graph_url!r})")


@dataclass(frozen=True)
class GroupSettings:
    name_prefix: str
    device_attribute: str
    description_template: str = DEFAULT_DESCRIPTION_TEMPLATE


@dataclass(frozen=True)
class SyncSettings:
    """Validated, read-only configuration for one run."""
    directory: DirectorySettings
    identity_provider: IdentityProviderSettings
    groups: GroupSettings
    logging: Mapping[str, Any]
    notifications: Mapping[str, Any]

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "SyncSettings":
        """Build settings from a loaded configuration dictionary."""
        try:
            directory = config['directory']
            idp = config['identity_provider']
            groups = config['groups']
            return cls(
                directory=DirectorySettings(
                    server_url=directory['server_url'],
                    bind_dn=directory['bind_dn'],
                    bind_password=directory['bind_password'],
                    search_base=directory.get('search_base') or '',
                    start_tls=bool(directory.get('start_tls', False)),
                    verify_ssl=bool(directory.get('verify_ssl', True)),
                    ca_cert_file=directory.get('ca_cert_file'),
                    connection_timeout=int(directory.get('connection_timeout', 10)),
                    receive_timeout=int(directory.get('receive_timeout', 10)),
                ),
                identity_provider=IdentityProviderSettings(
                    tenant_id=str(idp['tenant_id']),
                    client_id=str(idp['client_id']),
                    client_secret_env=idp.get('client_secret_env') or DEFAULT_SECRET_ENV,
                    client_secret_file=idp.get('client_secret_file'),
                    client_secret=idp.get('client_secret'),
                    authority=str(idp.get('authority', 'https://login.microsoftonline.com')).rstrip('/'),
                    graph_url=str(idp.get('graph_url', 'https://graph.microsoft.com')).rstrip('/'),
                    verify_ssl=bool(idp.get('verify_ssl', True)),
                    timeout=int(idp.get('timeout', 30)),
                ),
                groups=GroupSettings(
                    name_prefix=groups['name_prefix'],
                    device_attribute=groups['device_attribute'],
                    description_template=groups.get('description_template') or DEFAULT_DESCRIPTION_TEMPLATE,
                ),
                logging=MappingProxyType(copy.deepcopy(config.get('logging') or {})),
                notifications=MappingProxyType(copy.deepcopy(config.get('notifications') or {})),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration structure: {e}")


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def load_settings(config_path: Optional[str] = None) -> SyncSettings:
    """Load, validate and freeze configuration in one step."""
    return SyncSettings.from_dict(load_config(config_path))

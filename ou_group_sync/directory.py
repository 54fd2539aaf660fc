"""
Directory client for reading organizational units over LDAP.

This module connects to an LDAP / Active Directory server with ldap3 and
enumerates organizational units with their names and distinguished names.
"""

import ssl
from typing import List, Optional
from ldap3 import Server, Connection, SUBTREE, ALL, Tls
from ldap3.core.exceptions import LDAPException

from ou_group_sync.config import DirectorySettings
from ou_group_sync.errors import SetupError, SourceUnavailable
from ou_group_sync.logging_setup import SyncLog
from ou_group_sync.models import OrganizationalUnit

OU_FILTER = '(objectClass=organizationalUnit)'
OU_ATTRIBUTES = ['name', 'ou']


class DirectoryClient:
    """
    LDAP client that lists organizational units.

    Supports LDAPS and StartTLS. The full OU set is returned from a single
    search; hitting a server-side size limit fails the listing.
    """

    def __init__(self, settings: DirectorySettings, log: Optional[SyncLog] = None):
        """
        Initialize directory client.

        Args:
            settings: Directory connection settings
            log: Logging capability
        """
        self.settings = settings
        self.log = log or SyncLog()
        self.server = None
        self.connection = None
        self._connected = False

    def connect(self) -> bool:
        """
        Open and bind the LDAP connection.

        Returns:
            True if connection successful

        Raises:
            SetupError: If the server cannot be reached or the bind is rejected
        """
        try:
            self.server = Server(
                self.settings.server_url,
                use_ssl=self.settings.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.settings.connection_timeout
            )
            self.connection = Connection(
                self.server,
                user=self.settings.bind_dn,
                password=self.settings.bind_password,
                auto_bind=False,
                receive_timeout=self.settings.receive_timeout
            )

            # open() returns None; socket failures surface as LDAPException
            self.connection.open()

            if self.settings.start_tls and not self.settings.use_ssl:
                if not self.connection.start_tls():
                    raise SetupError(f"Failed to start TLS: {self.connection.result}")
                self.log.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise SetupError(f"Bind failed: {self.connection.result}")

        except SetupError:
            self._reset_connection()
            raise
        except LDAPException as e:
            self._reset_connection()
            raise SetupError(f"Failed to connect to directory {self.settings.server_url}: {e}")

        self._connected = True
        self.log.info(f"Connected and bound to directory server {self.settings.server_url}")
        return True

    def _create_tls_config(self) -> Optional[Tls]:
        """Create TLS configuration for LDAPS or StartTLS, None for plain LDAP."""
        if not (self.settings.use_ssl or self.settings.start_tls):
            return None

        tls_config = {}
        if not self.settings.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            self.log.warning("SSL certificate verification disabled for directory connection")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.settings.ca_cert_file:
            tls_config['ca_certs_file'] = self.settings.ca_cert_file

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise SetupError(f"Failed to create TLS configuration: {e}")

    def _reset_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                self.log.debug(f"Ignoring unbind error after failed connect: {e}")
        self.connection = None
        self._connected = False

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                self.log.debug("Directory connection closed")
            except LDAPException as e:
                self.log.warning(f"Error closing directory connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def list_organizational_units(self) -> List[OrganizationalUnit]:
        """
        Retrieve every organizational unit under the search base.

        Returns:
            Organizational units in directory order

        Raises:
            SourceUnavailable: If not connected or the search fails
        """
        if not self._connected:
            raise SourceUnavailable("Not connected to directory server")

        try:
            search_base = self._get_search_base()
            self.log.debug(f"Searching with filter: {OU_FILTER} in base: {search_base}")

            success = self.connection.search(
                search_base=search_base,
                search_filter=OU_FILTER,
                search_scope=SUBTREE,
                attributes=OU_ATTRIBUTES
            )
            # ldap3 reports False for an empty result set, so check the result code
            result = self.connection.result or {}
            if result.get('result') == 4:
                raise SourceUnavailable("Directory size limit exceeded; organizational unit list would be incomplete")
            if result.get('result') != 0:
                raise SourceUnavailable(f"Search failed (success={success}): {result}")

            units = []
            for entry in self.connection.entries:
                unit = self._to_organizational_unit(entry)
                if unit:
                    units.append(unit)

        except LDAPException as e:
            raise SourceUnavailable(f"Organizational unit query failed: {e}")

        self.log.debug(f"Retrieved {len(units)} organizational units from {search_base}")
        return units

    def _to_organizational_unit(self, entry) -> Optional[OrganizationalUnit]:
        """Map an LDAP entry to an OrganizationalUnit, None if it has no name."""
        distinguished_name = str(entry.entry_dn)
        name = None
        for attribute in OU_ATTRIBUTES:
            if attribute in entry.entry_attributes_as_dict:
                value = entry[attribute].value
                if isinstance(value, list):
                    value = value[0] if value else None
                if value:
                    name = str(value)
                    break

        if not name or not name.strip():
            self.log.warning(f"Organizational unit has no name, skipping: {distinguished_name}")
            return None

        return OrganizationalUnit(name=name, distinguished_name=distinguished_name)

    def _get_search_base(self) -> str:
        """Configured search base, else the domain base from the bind DN or server info."""
        if self.settings.search_base:
            return self.settings.search_base

        if 'DC=' in self.settings.bind_dn.upper():
            parts = self.settings.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise SourceUnavailable("Cannot determine directory search base")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()

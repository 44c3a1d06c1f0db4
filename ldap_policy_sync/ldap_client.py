"""
LDAP client for connecting to and querying the directory holding policy records.

This module opens the transport, upgrades it with StartTLS and binds with the
configured credential, then serves whole-subtree searches over the configured
base DN.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, Tls, SUBTREE, DEREF_NEVER, ALL_ATTRIBUTES, NONE
from ldap3.core.exceptions import LDAPException

from ldap_policy_sync.config import ConnectionConfig
from ldap_policy_sync.logging_setup import security_logger

logger = logging.getLogger(__name__)

RESULT_SUCCESS = 0


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class DirectoryEntry:
    """
    Read-only view of one search result entry.

    Attribute lookups are case-insensitive, as attribute names are in LDAP.
    """

    def __init__(self, dn: str, attributes: Dict[str, Any], raw_attributes: Dict[str, Any]):
        self.dn = dn
        self._attributes = {name.lower(): value for name, value in (attributes or {}).items()}
        self._raw_attributes = {name.lower(): value for name, value in (raw_attributes or {}).items()}

    @classmethod
    def from_response(cls, item: Dict[str, Any]) -> 'DirectoryEntry':
        return cls(item.get('dn', ''), item.get('attributes'), item.get('raw_attributes'))

    def get_attribute_values(self, name: str) -> List[str]:
        value = self._attributes.get(name.lower())
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [self._as_text(v) for v in value]
        return [self._as_text(value)]

    def get_attribute_value(self, name: str) -> str:
        """Return the first value of an attribute, or an empty string when absent."""
        values = self.get_attribute_values(name)
        return values[0] if values else ''

    def get_raw_attribute_value(self, name: str) -> bytes:
        """Return the first raw value of an attribute, or empty bytes when absent."""
        value = self._raw_attributes.get(name.lower())
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        if value is None:
            return b''
        if isinstance(value, str):
            return value.encode('utf-8')
        return bytes(value)

    def has_attribute(self, name: str) -> bool:
        return name.lower() in self._attributes or name.lower() in self._raw_attributes

    @staticmethod
    def _as_text(value: Any) -> str:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).decode('utf-8', errors='replace')
        return str(value)

    def __repr__(self):
        return f"DirectoryEntry(dn={self.dn!r})"


class LDAPClient:
    """
    LDAP client for the policy directory.

    One instance holds at most one live connection, opened by connect()
    and released by disconnect().
    """

    def __init__(self, config: ConnectionConfig, tls_config: Optional[Dict[str, Any]] = None):
        """
        Initialize LDAP client with a connection snapshot.

        Args:
            config: Connection parameters for this client
            tls_config: Optional TLS settings (validate, ca_cert_file)
        """
        self.config = config
        tls_config = tls_config or {}
        self.verify_ssl = bool(tls_config.get('validate', False))
        self.ca_cert_file = tls_config.get('ca_cert_file')

        self.server = None
        self.connection = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> bool:
        """
        Open the transport, start TLS and bind.

        A failure in any of the three steps is reported the same way.

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If any step fails
        """
        address = self.config.address
        try:
            self.server = Server(address, get_info=NONE, tls=self._create_tls_config())
            self.connection = Connection(
                self.server,
                user=self.config.username,
                password=self.config.password,
                auto_bind=False,
                raise_exceptions=False
            )

            self.connection.open()
            if self.connection.closed:
                raise LDAPConnectionError(f"Failed to open connection to {address}: {self.connection.result}")

            if not self.connection.start_tls():
                raise LDAPConnectionError(f"Failed to start TLS with {address}: {self.connection.result}")
            logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                security_logger.log_bind_attempt(address, self.config.username, False)
                raise LDAPConnectionError(f"Bind to {address} failed: {self.connection.result}")

        except LDAPConnectionError:
            self._release()
            raise
        except LDAPException as e:
            self._release()
            raise LDAPConnectionError(f"Failed to connect to {address}: {e}") from e
        except OSError as e:
            self._release()
            raise LDAPConnectionError(f"Failed to connect to {address}: {e}") from e

        self._connected = True
        security_logger.log_bind_attempt(address, self.config.username, True)
        logger.info(f"Successfully connected and bound to LDAP server {address}")
        return True

    def _create_tls_config(self) -> Tls:
        """
        Create TLS configuration for the StartTLS upgrade.

        Returns:
            Tls configuration object
        """
        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}") from e

    def _release(self):
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Error releasing failed connection: {e}")
        self.connection = None
        self._connected = False

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def search(self, search_filter: str) -> List[DirectoryEntry]:
        """
        Search the whole subtree under the configured base DN.

        Aliases are never dereferenced and every attribute is returned.

        Args:
            search_filter: LDAP filter expression

        Returns:
            List of matching entries; empty when nothing matches

        Raises:
            LDAPQueryError: If the search fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        base_dn = self.config.base_dn
        logger.info(f"LDAP search request: base={base_dn} filter={search_filter}")

        try:
            self.connection.search(
                search_base=base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                dereference_aliases=DEREF_NEVER,
                attributes=ALL_ATTRIBUTES
            )
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP search failed: {e}") from e

        # ldap3 reports an empty but successful search as False
        result = self.connection.result or {}
        if result.get('result') != RESULT_SUCCESS:
            raise LDAPQueryError(
                f"Search failed: {result.get('description', 'unknown')} {result.get('message', '')}".strip()
            )

        entries = [
            DirectoryEntry.from_response(item)
            for item in (self.connection.response or [])
            if item.get('type') == 'searchResEntry'
        ]
        logger.info(f"LDAP search returned {len(entries)} entries")
        return entries

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()

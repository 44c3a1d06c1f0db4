"""
Mapping of directory entries to documents and policy modules.

Document entries carry a store path and a JSON payload. Policy entries carry
a module id and Rego source, which is parsed as soon as it is read.
"""

import json
import logging
from typing import Any, Dict, Iterable, List

from ldap_policy_sync.ldap_client import DirectoryEntry, LDAPClient
from ldap_policy_sync.policy import PolicyModuleFile, parse_module, parse_error

logger = logging.getLogger(__name__)

DATA_OBJECTCLASS = 'OPAData'
POLICY_OBJECTCLASS = 'OPAPolicy'
DATA_PATH_ATTRIBUTE = 'path'
DATA_CONTENT_ATTRIBUTE = 'jsonData'
POLICY_PATH_ATTRIBUTE = 'id'
POLICY_CONTENT_ATTRIBUTE = 'content'

DATA_FILTER = f"(objectclass={DATA_OBJECTCLASS})"
POLICY_FILTER = f"(objectclass={POLICY_OBJECTCLASS})"


class DocumentDecodeError(Exception):
    """Raised when a document entry cannot be turned into a document."""

    def __init__(self, dn: str, message: str):
        self.dn = dn
        super().__init__(f"Invalid document entry {dn}: {message}")


def normalize_path(path: str) -> str:
    """Return path with exactly one leading slash."""
    return '/' + path.lstrip('/')


def map_documents(entries: Iterable[DirectoryEntry]) -> Dict[str, Any]:
    """
    Decode document entries into a path-keyed mapping.

    Later entries overwrite earlier ones with the same path.

    Raises:
        DocumentDecodeError: On the first entry without a path or with invalid JSON
    """
    documents = {}
    for entry in entries:
        path = entry.get_attribute_value(DATA_PATH_ATTRIBUTE).strip()
        if not path:
            raise DocumentDecodeError(entry.dn, f"missing {DATA_PATH_ATTRIBUTE} attribute")

        content = entry.get_raw_attribute_value(DATA_CONTENT_ATTRIBUTE)
        try:
            value = json.loads(content)
        except (UnicodeDecodeError, ValueError) as e:
            raise DocumentDecodeError(entry.dn, f"{DATA_CONTENT_ATTRIBUTE} is not valid JSON: {e}") from e

        path = normalize_path(path)
        if path in documents:
            logger.warning(f"Duplicate document path {path}, entry {entry.dn} overwrites the earlier value")
        documents[path] = value

    return documents


def map_policies(entries: Iterable[DirectoryEntry]) -> List[PolicyModuleFile]:
    """
    Parse policy entries into module files, in search order.

    Raises:
        PolicyParseError: On the first entry without an id or with unparseable source
    """
    files = []
    for entry in entries:
        module_id = entry.get_attribute_value(POLICY_PATH_ATTRIBUTE).strip()
        if not module_id:
            raise parse_error(entry.dn, 1, f"missing {POLICY_PATH_ATTRIBUTE} attribute")

        raw = entry.get_raw_attribute_value(POLICY_CONTENT_ATTRIBUTE)
        files.append(PolicyModuleFile(path=module_id, raw=raw, parsed=parse_module(module_id, raw)))

    return files


def fetch_documents(client: LDAPClient) -> Dict[str, Any]:
    """
    Search every document entry under the client's base DN and decode it.

    Returns:
        Mapping of store path to decoded JSON value; empty when nothing matches

    Raises:
        LDAPQueryError: If the search fails
        DocumentDecodeError: If any entry cannot be decoded
    """
    entries = client.search(DATA_FILTER)
    documents = map_documents(entries)
    logger.info(f"Fetched {len(documents)} documents from {len(entries)} entries")
    return documents


def fetch_policies(client: LDAPClient) -> List[PolicyModuleFile]:
    """
    Search every policy entry under the client's base DN and parse it.

    Raises:
        LDAPQueryError: If the search fails
        PolicyParseError: If any entry cannot be parsed
    """
    files = map_policies(client.search(POLICY_FILTER))
    logger.info(f"Fetched {len(files)} policy modules")
    return files

"""
Plugin registration for hosts embedding the synchronizer.

A host looks a factory up by name, validates the raw plugin configuration
with it, and builds a synchronizer bound to the host's store.
"""

import logging
import functools
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from ldap_policy_sync.config import ConnectionConfig, RetryPolicy, parse_connection_config
from ldap_policy_sync.ldap_client import LDAPClient
from ldap_policy_sync.store import Store
from ldap_policy_sync.synchronizer import Synchronizer

logger = logging.getLogger(__name__)

PLUGIN_NAME = 'ldap_policy_sync'


class PluginFactory(ABC):
    """Builds plugin instances from validated configuration."""

    @abstractmethod
    def validate(self, raw_config: Union[bytes, str, Dict[str, Any]]) -> Any:
        pass

    @abstractmethod
    def new(self, store: Store, config: Any) -> Any:
        pass


class SynchronizerFactory(PluginFactory):
    """Factory for the directory synchronizer plugin."""

    def __init__(self, retry_policy: Optional[RetryPolicy] = None, tls_config: Optional[Dict[str, Any]] = None):
        self.retry_policy = retry_policy
        self.tls_config = tls_config

    def validate(self, raw_config: Union[bytes, str, Dict[str, Any]]) -> ConnectionConfig:
        """
        Parse plugin configuration into a connection snapshot.

        Raises:
            ConfigurationError: If the configuration is malformed or incomplete
        """
        config = parse_connection_config(raw_config)
        logger.info(f"Synchronizer plugin configuration: {config!r}")
        return config

    def new(self, store: Store, config: ConnectionConfig) -> Synchronizer:
        logger.info(f"Creating synchronizer for {config.address}")
        client_factory = functools.partial(LDAPClient, tls_config=self.tls_config)
        return Synchronizer(store, config, retry_policy=self.retry_policy, client_factory=client_factory)


_registry: Dict[str, PluginFactory] = {}


def register_plugin(name: str, factory: PluginFactory) -> None:
    """Register a plugin factory under name, replacing any earlier one."""
    if name in _registry:
        logger.warning(f"Replacing registered plugin {name}")
    _registry[name] = factory


def get_plugin_factory(name: str) -> PluginFactory:
    try:
        return _registry[name]
    except KeyError:
        raise KeyError(f"No plugin registered under {name!r}") from None


def registered_plugins() -> List[str]:
    return sorted(_registry)


def init(factory: Optional[SynchronizerFactory] = None) -> None:
    """Register the synchronizer plugin under its default name."""
    register_plugin(PLUGIN_NAME, factory or SynchronizerFactory())

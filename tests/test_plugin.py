#!/usr/bin/env python3
"""
Tests for plugin registration and the synchronizer factory.
"""

import os
import sys
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_policy_sync import plugin
from ldap_policy_sync.config import ConfigurationError, ConnectionConfig, RetryPolicy
from ldap_policy_sync.plugin import (
    SynchronizerFactory, PLUGIN_NAME, init, register_plugin, get_plugin_factory, registered_plugins
)
from ldap_policy_sync.store import InMemoryStore
from ldap_policy_sync.synchronizer import Synchronizer, SyncState


class TestSynchronizerFactory(unittest.TestCase):
    """Test cases for SynchronizerFactory."""

    def setUp(self):
        self.factory = SynchronizerFactory()

    def test_validate_json(self):
        config = self.factory.validate(
            b'{"addr": "ldap:389", "base_dn": "dc=x", "username": "cn=u", "password": "p"}'
        )
        self.assertEqual(config, ConnectionConfig('ldap:389', 'dc=x', 'cn=u', 'p'))

    def test_validate_rejects_incomplete(self):
        with self.assertRaises(ConfigurationError) as context:
            self.factory.validate(b'{"addr": "ldap:389"}')
        self.assertIn("base_dn", str(context.exception))

    def test_validate_does_not_log_password(self):
        with self.assertLogs('ldap_policy_sync.plugin', level='INFO') as logs:
            self.factory.validate({'address': 'ldap:389', 'base_dn': 'dc=x', 'username': 'cn=u', 'password': 'hunter2'})
        self.assertNotIn('hunter2', '\n'.join(logs.output))

    def test_new_builds_synchronizer(self):
        store = InMemoryStore()
        config = ConnectionConfig('ldap:389', 'dc=x', 'cn=u', 'p')
        factory = SynchronizerFactory(retry_policy=RetryPolicy(1, 2))

        synchronizer = factory.new(store, config)

        self.assertIsInstance(synchronizer, Synchronizer)
        self.assertIs(synchronizer.store, store)
        self.assertEqual(synchronizer.config, config)
        self.assertEqual(synchronizer.retry_policy, RetryPolicy(1, 2))
        self.assertEqual(synchronizer.state, SyncState.CREATED)

    @patch('ldap_policy_sync.plugin.LDAPClient')
    def test_client_factory_carries_tls_settings(self, mock_client):
        config = ConnectionConfig('ldap:389', 'dc=x', 'cn=u', 'p')
        tls_config = {'validate': True, 'ca_cert_file': None}
        synchronizer = SynchronizerFactory(tls_config=tls_config).new(InMemoryStore(), config)

        synchronizer.client_factory(config)

        mock_client.assert_called_once_with(config, tls_config=tls_config)


class TestRegistry(unittest.TestCase):
    """Test cases for the plugin registry."""

    def setUp(self):
        self.saved = dict(plugin._registry)
        plugin._registry.clear()

    def tearDown(self):
        plugin._registry.clear()
        plugin._registry.update(self.saved)

    def test_init_registers_default_name(self):
        init()
        self.assertEqual(registered_plugins(), [PLUGIN_NAME])
        self.assertIsInstance(get_plugin_factory(PLUGIN_NAME), SynchronizerFactory)

    def test_init_with_factory(self):
        factory = SynchronizerFactory(retry_policy=RetryPolicy(0, 1))
        init(factory)
        self.assertIs(get_plugin_factory(PLUGIN_NAME), factory)

    def test_replace_warns(self):
        register_plugin('custom', SynchronizerFactory())
        with self.assertLogs('ldap_policy_sync.plugin', level='WARNING'):
            register_plugin('custom', SynchronizerFactory())

    def test_unknown_plugin(self):
        with self.assertRaises(KeyError):
            get_plugin_factory('missing')


if __name__ == '__main__':
    unittest.main()

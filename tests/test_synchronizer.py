#!/usr/bin/env python3
"""
Tests for the synchronizer.

A fake directory client stands in for ldap3 so that whole fetch-and-commit
cycles run against a real in-memory store.
"""

import os
import sys
import threading
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_policy_sync.config import ConnectionConfig, RetryPolicy
from ldap_policy_sync.ldap_client import DirectoryEntry, LDAPConnectionError, LDAPQueryError
from ldap_policy_sync.mapper import DATA_FILTER, POLICY_FILTER, DocumentDecodeError
from ldap_policy_sync.policy import PolicyCompileError, PolicyParseError
from ldap_policy_sync.retry import MaxRetriesExceeded, RetryCancelled
from ldap_policy_sync.store import InMemoryStore, StoreError
from ldap_policy_sync.synchronizer import Synchronizer, SynchronizerError, SyncState

AUTHZ_POLICY = b"""package authz

default allow = false

allow {
    input.user == "admin"
}
"""


class FakeDirectory:
    """Directory content and connection behaviour shared by every fake client."""

    def __init__(self, documents=None, policies=None, failures=0):
        self.documents = documents or []
        self.policies = policies or []
        self.failures = failures
        self.connect_calls = 0
        self.configs = []
        self.clients = []
        self.query_error = None

    def client_factory(self, config):
        client = FakeClient(self, config)
        self.clients.append(client)
        return client

    def add_document(self, dn, path, json_data):
        self.documents.append(DirectoryEntry(dn, {'path': [path]}, {'jsonData': [json_data]}))

    def add_policy(self, dn, module_id, content):
        self.policies.append(DirectoryEntry(dn, {'id': [module_id]}, {'content': [content]}))


class FakeClient:

    def __init__(self, directory, config):
        self.directory = directory
        self.config = config
        self.disconnected = False

    def connect(self):
        self.directory.connect_calls += 1
        self.directory.configs.append(self.config)
        if self.directory.connect_calls <= self.directory.failures:
            raise LDAPConnectionError(f"Failed to connect to {self.config.address}: refused")
        return True

    def search(self, search_filter):
        if self.directory.query_error:
            raise self.directory.query_error
        if search_filter == DATA_FILTER:
            return list(self.directory.documents)
        if search_filter == POLICY_FILTER:
            return list(self.directory.policies)
        return []

    def disconnect(self):
        self.disconnected = True


class SynchronizerTestCase(unittest.TestCase):

    def setUp(self):
        self.config = ConnectionConfig('ldap.example.com:389', 'ou=policies,dc=example,dc=com', 'cn=sync', 'pw')
        self.store = InMemoryStore()
        self.directory = FakeDirectory()

    def make_synchronizer(self, retry_policy=None, store=None):
        return Synchronizer(
            store or self.store,
            self.config,
            retry_policy=retry_policy or RetryPolicy(0, None),
            client_factory=self.directory.client_factory
        )

    def read_data(self, path=(), store=None):
        store = store or self.store
        with store.transaction() as txn:
            return store.read(txn, path)

    def read_policies(self, store=None):
        store = store or self.store
        with store.transaction() as txn:
            return {module_id: store.get_policy(txn, module_id) for module_id in store.list_policies(txn)}


class TestSynchronizerSync(SynchronizerTestCase):
    """Test cases for a full synchronization cycle."""

    def test_documents_and_policies_installed(self):
        self.directory.add_document('cn=a', '/cfg/a', b'{"x":1}')
        self.directory.add_policy('cn=p1', 'pol1.rego', AUTHZ_POLICY)
        synchronizer = self.make_synchronizer()

        synchronizer.start()

        self.assertEqual(synchronizer.state, SyncState.READY)
        self.assertEqual(self.read_data(('cfg', 'a')), {'x': 1})
        self.assertEqual(self.read_policies(), {'pol1.rego': AUTHZ_POLICY})
        self.assertEqual(synchronizer.sync_stats['documents_written'], 1)
        self.assertEqual(synchronizer.sync_stats['policies_installed'], 1)

    def test_empty_directory(self):
        synchronizer = self.make_synchronizer()

        synchronizer.start()

        self.assertEqual(synchronizer.state, SyncState.READY)
        self.assertEqual(self.read_data(), {})
        self.assertEqual(self.read_policies(), {})

    def test_path_without_leading_slash(self):
        self.directory.add_document('cn=a', 'cfg/a', b'true')
        self.make_synchronizer().start()
        self.assertTrue(self.read_data(('cfg', 'a')))

    def test_existing_data_kept(self):
        store = InMemoryStore({'other': {'keep': 1}})
        self.directory.add_document('cn=a', '/cfg/a', b'2')

        self.make_synchronizer(store=store).start()

        self.assertEqual(self.read_data(store=store), {'other': {'keep': 1}, 'cfg': {'a': 2}})

    def test_duplicate_document_path_last_wins(self):
        self.directory.add_document('cn=a', '/cfg', b'1')
        self.directory.add_document('cn=b', '/cfg', b'2')

        self.make_synchronizer().start()

        self.assertEqual(self.read_data(('cfg',)), 2)

    def test_resync_is_idempotent(self):
        self.directory.add_document('cn=a', '/cfg/a', b'{"x":1}')
        self.directory.add_document('cn=b', '/flag', b'true')
        self.directory.add_policy('cn=p1', 'pol1.rego', AUTHZ_POLICY)

        self.make_synchronizer().start()
        first_data, first_policies = self.read_data(), self.read_policies()
        self.make_synchronizer().start()

        self.assertEqual(self.read_data(), first_data)
        self.assertEqual(self.read_policies(), first_policies)

    def test_invalid_json_fails_before_commit(self):
        self.directory.add_document('cn=bad', '/cfg/a', b'{"x":')
        self.directory.add_policy('cn=p1', 'pol1.rego', AUTHZ_POLICY)
        synchronizer = self.make_synchronizer()

        with self.assertRaises(DocumentDecodeError):
            synchronizer.start()

        self.assertEqual(synchronizer.state, SyncState.FAILED)
        self.assertIn('DocumentDecodeError', synchronizer.sync_stats['last_error'])
        self.assertEqual(self.read_data(), {})
        self.assertEqual(self.read_policies(), {})

    def test_invalid_policy_fails_with_compile_error(self):
        self.directory.add_document('cn=a', '/cfg/a', b'{"x":1}')
        self.directory.add_policy('cn=p1', 'pol1.rego', b'package authz\n\nallow {\n')
        synchronizer = self.make_synchronizer()

        with self.assertRaises(PolicyCompileError) as context:
            synchronizer.start()

        self.assertIsInstance(context.exception, PolicyParseError)
        self.assertEqual(self.read_data(), {})
        self.assertEqual(self.read_policies(), {})

    def test_compile_failure_leaves_store_unchanged(self):
        store = InMemoryStore({'authz': {'allow': True}})
        self.directory.add_document('cn=a', '/cfg/a', b'{"x":1}')
        self.directory.add_policy('cn=p1', 'pol1.rego', AUTHZ_POLICY)
        synchronizer = self.make_synchronizer(store=store)

        with self.assertRaises(PolicyCompileError) as context:
            synchronizer.start()

        self.assertIn('authz/allow', str(context.exception))
        self.assertEqual(self.read_data(store=store), {'authz': {'allow': True}})
        self.assertEqual(self.read_policies(store=store), {})

    def test_policy_conflicts_with_synchronized_document(self):
        self.directory.add_document('cn=a', '/authz/allow', b'true')
        self.directory.add_policy('cn=p1', 'pol1.rego', AUTHZ_POLICY)

        with self.assertRaises(PolicyCompileError):
            self.make_synchronizer().start()

        self.assertEqual(self.read_data(), {})

    def test_document_under_scalar_fails(self):
        store = InMemoryStore({'cfg': 5})
        self.directory.add_document('cn=a', '/cfg/a', b'1')

        with self.assertRaises(StoreError):
            self.make_synchronizer(store=store).start()

        self.assertEqual(self.read_data(store=store), {'cfg': 5})

    def test_query_error_propagates(self):
        self.directory.query_error = LDAPQueryError("Search failed: noSuchObject")
        synchronizer = self.make_synchronizer()

        with self.assertRaises(LDAPQueryError):
            synchronizer.start()
        self.assertEqual(synchronizer.state, SyncState.FAILED)

    def test_compiler_receives_all_modules(self):
        compiler = Mock()
        self.directory.add_policy('cn=p1', 'pol1.rego', AUTHZ_POLICY)
        self.directory.add_policy('cn=p2', 'pol2.rego', b'package other\n\nx := 1\n')
        synchronizer = Synchronizer(self.store, self.config, retry_policy=RetryPolicy(0, None),
                                    compiler=compiler, client_factory=self.directory.client_factory)

        synchronizer.start()

        modules = compiler.compile.call_args[0][0]
        self.assertEqual(sorted(modules), ['pol1.rego', 'pol2.rego'])
        self.assertTrue(callable(compiler.compile.call_args[1]['path_conflict_check']))


class TestSynchronizerConnection(SynchronizerTestCase):
    """Test cases for connection retries and cancellation."""

    def test_retries_until_connected(self):
        self.directory.failures = 3
        synchronizer = self.make_synchronizer()

        synchronizer.start()

        self.assertEqual(self.directory.connect_calls, 4)
        self.assertEqual(synchronizer.sync_stats['connect_attempts'], 4)
        self.assertEqual(synchronizer.state, SyncState.READY)

    def test_max_attempts(self):
        self.directory.failures = 10
        synchronizer = self.make_synchronizer(RetryPolicy(0, 3))

        with self.assertRaises(MaxRetriesExceeded):
            synchronizer.start()

        self.assertEqual(self.directory.connect_calls, 3)
        self.assertEqual(synchronizer.state, SyncState.FAILED)

    def test_cancel_while_connecting(self):
        self.directory.failures = 1000
        cancel = threading.Event()
        real_connect = FakeClient.connect

        def connect_and_cancel(client):
            if client.directory.connect_calls == 2:
                cancel.set()
            return real_connect(client)

        synchronizer = self.make_synchronizer(RetryPolicy(0.01, None))
        with patch.object(FakeClient, 'connect', connect_and_cancel):
            with self.assertRaises(RetryCancelled):
                synchronizer.start(cancel_event=cancel)

        self.assertEqual(self.directory.connect_calls, 3)
        self.assertEqual(self.read_data(), {})

    def test_stop_from_another_thread_while_connecting(self):
        self.directory.failures = 3
        attempted = threading.Event()
        real_connect = FakeClient.connect

        def connect_and_signal(client):
            try:
                return real_connect(client)
            finally:
                attempted.set()

        synchronizer = self.make_synchronizer(RetryPolicy(5, None))
        errors = []

        def run():
            try:
                synchronizer.start()
            except Exception as e:
                errors.append(e)

        with patch.object(FakeClient, 'connect', connect_and_signal):
            worker = threading.Thread(target=run)
            worker.start()
            self.assertTrue(attempted.wait(2))
            synchronizer.stop()
            worker.join(2)

        self.assertFalse(worker.is_alive())
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], RetryCancelled)
        self.assertEqual(self.directory.connect_calls, 1)
        self.assertEqual(synchronizer.state, SyncState.STOPPED)
        self.assertIsNone(synchronizer.client)
        self.assertEqual(self.read_data(), {})

    def test_stop_after_connect_releases_connection(self):
        self.directory.add_document('cn=a', '/cfg', b'{"a": 1}')
        synchronizer = self.make_synchronizer()
        real_connect = FakeClient.connect

        def connect_then_stop(client):
            result = real_connect(client)
            synchronizer.stop()
            return result

        with patch.object(FakeClient, 'connect', connect_then_stop):
            with self.assertRaises(RetryCancelled):
                synchronizer.start()

        self.assertTrue(self.directory.clients[-1].disconnected)
        self.assertIsNone(synchronizer.client)
        self.assertEqual(synchronizer.state, SyncState.STOPPED)
        self.assertEqual(self.read_data(), {})

    def test_cancel_event_set_before_start(self):
        cancel = threading.Event()
        cancel.set()
        synchronizer = self.make_synchronizer()

        with self.assertRaises(RetryCancelled):
            synchronizer.start(cancel_event=cancel)

        self.assertEqual(self.directory.connect_calls, 0)

    def test_reconfigure_used_by_next_attempt(self):
        self.directory.failures = 1
        synchronizer = self.make_synchronizer()
        new_config = ConnectionConfig('ldap2.example.com:389', 'dc=other', 'cn=other', 'pw2')

        real_connect = FakeClient.connect

        def connect_and_reconfigure(client):
            if client.directory.connect_calls == 0:
                synchronizer.reconfigure(new_config)
            return real_connect(client)

        with patch.object(FakeClient, 'connect', connect_and_reconfigure):
            synchronizer.start()

        self.assertEqual(self.directory.configs[0], self.config)
        self.assertEqual(self.directory.configs[1], new_config)
        self.assertEqual(synchronizer.config, new_config)


class TestSynchronizerLifecycle(SynchronizerTestCase):
    """Test cases for start and stop ordering."""

    def test_stop_disconnects(self):
        synchronizer = self.make_synchronizer()
        synchronizer.start()
        client = self.directory.clients[-1]

        synchronizer.stop()

        self.assertTrue(client.disconnected)
        self.assertEqual(synchronizer.state, SyncState.STOPPED)
        # stopping twice is harmless
        synchronizer.stop()

    def test_stop_before_start(self):
        synchronizer = self.make_synchronizer()
        synchronizer.stop()
        self.assertEqual(synchronizer.state, SyncState.STOPPED)

    def test_start_twice(self):
        synchronizer = self.make_synchronizer()
        synchronizer.start()
        with self.assertRaises(SynchronizerError):
            synchronizer.start()

    def test_start_after_stop(self):
        synchronizer = self.make_synchronizer()
        synchronizer.stop()
        with self.assertRaises(SynchronizerError):
            synchronizer.start()

    def test_fetch_requires_connection(self):
        with self.assertRaises(SynchronizerError):
            self.make_synchronizer().fetch_documents()

    def test_status(self):
        synchronizer = self.make_synchronizer()
        synchronizer.start()

        status = synchronizer.status()

        self.assertEqual(status['state'], 'ready')
        self.assertEqual(status['address'], 'ldap.example.com:389')
        self.assertEqual(status['connect_attempts'], 1)
        self.assertIsNone(status['last_error'])


if __name__ == '__main__':
    unittest.main()

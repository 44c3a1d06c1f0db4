"""
Synchronizer for directory-held documents and policy modules.

The synchronizer connects to the directory (retrying until it succeeds),
fetches both record categories, and installs them into the store in a
single write transaction. The policy set is compiled inside that same
transaction, after the documents are staged, so a policy that collides with
synchronized or pre-existing data keeps everything out of the store.

Lifecycle:
    CREATED -> CONNECTING -> FETCHING -> COMMITTING -> READY
    any fetch or commit failure          -> FAILED
    stop(), from any state               -> STOPPED
    a stop before COMMITTING ends start() with RetryCancelled
"""

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ldap_policy_sync.config import ConnectionConfig, RetryPolicy
from ldap_policy_sync.ldap_client import LDAPClient, LDAPConnectionError
from ldap_policy_sync.logging_setup import security_logger
from ldap_policy_sync.mapper import fetch_documents, fetch_policies
from ldap_policy_sync.policy import PolicyCompiler, PolicyModuleFile, RegoCompiler
from ldap_policy_sync.retry import RetryCancelled, retry_until_connected
from ldap_policy_sync.store import ADD_OP, Store, Transaction, parse_path

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ConnectionConfig], LDAPClient]


class SynchronizerError(Exception):
    """Raised when the synchronizer is used out of lifecycle order."""
    pass


class SyncState(Enum):
    CREATED = 'created'
    CONNECTING = 'connecting'
    FETCHING = 'fetching'
    COMMITTING = 'committing'
    READY = 'ready'
    FAILED = 'failed'
    STOPPED = 'stopped'


class Synchronizer:
    """
    One-way synchronizer from the directory into a transactional store.

    Performs exactly one fetch-and-commit cycle per start(). Only the
    connection is retried; any later failure is returned to the caller.
    """

    def __init__(self, store: Store, config: ConnectionConfig,
                 retry_policy: Optional[RetryPolicy] = None,
                 compiler: Optional[PolicyCompiler] = None,
                 client_factory: Optional[ClientFactory] = None):
        """
        Initialize synchronizer.

        Args:
            store: Store receiving documents and policy modules
            config: Initial connection parameters
            retry_policy: Connection retry policy (fixed 5s interval, unbounded by default)
            compiler: Compiler validating the policy set (RegoCompiler by default)
            client_factory: Builds a directory client from a connection snapshot
        """
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.compiler = compiler or RegoCompiler()
        self.client_factory = client_factory or LDAPClient

        self._config = config
        self._config_lock = threading.Lock()
        self._lock = threading.RLock()
        self._stop_event = threading.Event()

        self.client = None
        self.state = SyncState.CREATED
        self.documents: Dict[str, Any] = {}
        self.policies: List[PolicyModuleFile] = []

        self.sync_stats = {
            'connect_attempts': 0,
            'documents_written': 0,
            'policies_installed': 0,
            'start_time': None,
            'connected_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'last_error': None
        }

    @property
    def config(self) -> ConnectionConfig:
        """Current connection snapshot."""
        with self._config_lock:
            return self._config

    def start(self, cancel_event: Optional[threading.Event] = None) -> None:
        """
        Connect, fetch and commit.

        Blocks until a connection succeeds. stop(), or setting cancel_event,
        makes the connection loop give up before its next attempt and keeps
        a cycle that has not reached the commit from writing anything.

        Args:
            cancel_event: Optional cancellation signal, shared with stop()

        Raises:
            SynchronizerError: If the synchronizer was already started or stopped
            RetryCancelled: If stopped or cancelled before the commit
            MaxRetriesExceeded: If the retry policy bounds attempts and all failed
            LDAPQueryError, DocumentDecodeError, PolicyParseError,
            PolicyCompileError, StoreError: If fetching or committing fails
        """
        with self._lock:
            if self.state is not SyncState.CREATED:
                raise SynchronizerError(f"Cannot start synchronizer in state {self.state.value}")
            if cancel_event is not None:
                self._stop_event = cancel_event
            self.state = SyncState.CONNECTING

        self.sync_stats['start_time'] = datetime.now()
        try:
            self._attach(self._connect())
            self.sync_stats['connected_time'] = datetime.now()

            self._advance(SyncState.FETCHING)
            self.documents = self.fetch_documents()
            self.policies = self.fetch_policies()

            self._advance(SyncState.COMMITTING)
            self.commit(self.documents, self.policies)
        except Exception as e:
            with self._lock:
                if self.state is not SyncState.STOPPED:
                    self.state = SyncState.FAILED
            self.sync_stats['last_error'] = f"{type(e).__name__}: {e}"
            logger.error(f"Synchronization failed: {e}")
            raise
        finally:
            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

        with self._lock:
            if self.state is SyncState.COMMITTING:
                self.state = SyncState.READY
        self._log_sync_summary()

    def stop(self) -> None:
        """
        Cancel a running connection loop and release the directory connection.

        Safe to call from another thread and more than once. The synchronizer
        does not sync again.
        """
        with self._lock:
            self._stop_event.set()
            client, self.client = self.client, None
            already_stopped = self.state is SyncState.STOPPED
            self.state = SyncState.STOPPED

        if client is not None:
            client.disconnect()
        if not already_stopped:
            logger.info("Synchronizer stopped")

    def _cancelled(self) -> bool:
        return self.state is SyncState.STOPPED or self._stop_event.is_set()

    def _attach(self, client: LDAPClient):
        """Keep a fresh connection, or release it at once if stop() came first."""
        with self._lock:
            if not self._cancelled():
                self.client = client
                return
        client.disconnect()
        raise RetryCancelled(self.sync_stats['connect_attempts'])

    def _advance(self, state: SyncState):
        with self._lock:
            if not self._cancelled():
                self.state = state
                return
        raise RetryCancelled(self.sync_stats['connect_attempts'])

    def reconfigure(self, config: ConnectionConfig) -> None:
        """
        Replace the connection parameters.

        The new snapshot is used by the next connection attempt; a live
        connection is left as is.
        """
        with self._config_lock:
            self._config = config
        security_logger.log_reconfiguration(config.address, config.username)

    def _connect(self) -> LDAPClient:
        return retry_until_connected(
            self._attempt_connection,
            interval=self.retry_policy.interval_seconds,
            max_attempts=self.retry_policy.max_attempts,
            exceptions=(LDAPConnectionError,),
            cancel_event=self._stop_event
        )

    def _attempt_connection(self) -> LDAPClient:
        self.sync_stats['connect_attempts'] += 1
        client = self.client_factory(self.config)
        client.connect()
        return client

    def fetch_documents(self) -> Dict[str, Any]:
        """
        Fetch every document entry under the base DN.

        Returns:
            Mapping of store path to decoded JSON value
        """
        return fetch_documents(self._require_client())

    def fetch_policies(self) -> List[PolicyModuleFile]:
        """
        Fetch and parse every policy entry under the base DN.

        Returns:
            Parsed policy module files in search order
        """
        return fetch_policies(self._require_client())

    def commit(self, documents: Dict[str, Any], policies: List[PolicyModuleFile]) -> None:
        """
        Install documents and policy modules in one write transaction.

        Either everything becomes visible or nothing does.
        """
        with self.store.transaction(write=True) as txn:
            self._write_documents(txn, documents)
            self._write_policies(txn, policies)

        self.sync_stats['documents_written'] = len(documents)
        self.sync_stats['policies_installed'] = len({f.path for f in policies})
        for module_file in policies:
            security_logger.log_policy_install(module_file.path, len(module_file.raw))

    def _write_documents(self, txn: Transaction, documents: Dict[str, Any]):
        for path, value in documents.items():
            parsed = parse_path(path)
            self.store.make_dir(txn, parsed[:-1])
            self.store.write(txn, ADD_OP, parsed, value)
            logger.debug(f"Staged document {path}")

    def _write_policies(self, txn: Transaction, files: List[PolicyModuleFile]):
        modules = {}
        for module_file in files:
            modules[module_file.path] = module_file.parsed

        self.compiler.compile(modules, path_conflict_check=self.store.non_empty(txn))

        for module_file in files:
            self.store.upsert_policy(txn, module_file.path, module_file.raw)
            logger.debug(f"Staged policy module {module_file.path}")

    def _require_client(self) -> LDAPClient:
        if self.client is None:
            raise SynchronizerError("Not connected to the directory")
        return self.client

    def status(self) -> Dict[str, Any]:
        """Return the lifecycle state and statistics of the last cycle."""
        status = dict(self.sync_stats)
        status['state'] = self.state.value
        status['address'] = self.config.address
        return status

    def _log_sync_summary(self):
        stats = self.sync_stats
        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {stats['runtime_seconds']:.2f} seconds")
        logger.info(f"Connection attempts: {stats['connect_attempts']}")
        logger.info(f"Documents written: {stats['documents_written']}")
        logger.info(f"Policy modules installed: {stats['policies_installed']}")

"""
Command line entry point for LDAP Policy Sync.

Runs one synchronization cycle from the directory into an in-memory store
and optionally exports the resulting documents and policy modules as JSON.
"""

import sys
import json
import signal
import logging
import threading
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_policy_sync.config import (
    ConfigurationError, load_config, connection_config_from, retry_policy_from
)
from ldap_policy_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from ldap_policy_sync.logging_setup import setup_logging, security_logger
from ldap_policy_sync.mapper import DocumentDecodeError
from ldap_policy_sync.plugin import SynchronizerFactory
from ldap_policy_sync.policy import PolicyCompileError
from ldap_policy_sync.retry import MaxRetriesExceeded, RetryCancelled
from ldap_policy_sync.store import InMemoryStore, StoreError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CANCELLED = 1
EXIT_CONFIG_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_SYNC_ERROR = 4
EXIT_UNEXPECTED_ERROR = 5


class SyncApplication:
    """
    Runs the synchronizer once against a freshly built in-memory store.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.config = None
        self.store = None
        self.synchronizer = None
        self.cancel_event = threading.Event()

    def run(self) -> int:
        """
        Run one synchronization cycle.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._load_configuration()
            setup_logging(self.config.get('logging', {}))
            logger.info("Starting LDAP Policy Sync")

            self.store = self._create_store()
            self.synchronizer = self._create_synchronizer()
            self.synchronizer.start(cancel_event=self.cancel_event)
            logger.info("Sync completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except RetryCancelled as e:
            logger.warning(f"Sync cancelled while connecting: {e}")
            return EXIT_CANCELLED
        except MaxRetriesExceeded as e:
            logger.error(f"LDAP connection error: {e}")
            return EXIT_CONNECTION_ERROR
        except (LDAPQueryError, DocumentDecodeError, PolicyCompileError, StoreError) as e:
            logger.error(f"Sync failed: {e}")
            return EXIT_SYNC_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path)
        security_logger.log_configuration_access(self.config_path or 'config.yaml')

    def _create_store(self) -> InMemoryStore:
        initial_data_file = self.config.get('store', {}).get('initial_data_file')
        if not initial_data_file:
            return InMemoryStore()

        try:
            with open(initial_data_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot read initial store data {initial_data_file}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"Initial store data must be a JSON object: {initial_data_file}")

        logger.info(f"Seeded store from {initial_data_file}")
        return InMemoryStore(data)

    def _create_synchronizer(self):
        factory = SynchronizerFactory(
            retry_policy=retry_policy_from(self.config),
            tls_config=self.config.get('tls')
        )
        return factory.new(self.store, connection_config_from(self.config))

    def snapshot(self) -> Dict[str, Any]:
        """
        Export the store content.

        Returns:
            Dictionary with the document tree and every policy module source
        """
        with self.store.transaction() as txn:
            data = self.store.read(txn, ())
            policies = {
                module_id: self.store.get_policy(txn, module_id).decode('utf-8', errors='replace')
                for module_id in self.store.list_policies(txn)
            }
        return {'data': data, 'policies': policies}

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check: configuration and a single connection attempt.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        with LDAPClient(connection_config_from(self.config), self.config.get('tls')) as client:
            try:
                client.connect()
                health_status['checks']['ldap'] = {
                    'status': 'pass',
                    'message': 'LDAP connection successful'
                }
            except LDAPConnectionError as e:
                health_status['checks']['ldap'] = {
                    'status': 'fail',
                    'message': f'LDAP connection failed: {e}'
                }
                health_status['status'] = 'unhealthy'

        return health_status

    def cancel(self):
        """Ask a running connection loop to give up."""
        self.cancel_event.set()

    def _cleanup(self):
        """Clean up resources."""
        if self.synchronizer:
            self.synchronizer.stop()


def health_exit_code(health_status: Dict[str, Any]) -> int:
    """Map a health check result to the exit code of its first failed check."""
    checks = health_status['checks']
    if checks.get('configuration', {}).get('status') == 'fail':
        return EXIT_CONFIG_ERROR
    if checks.get('ldap', {}).get('status') == 'fail':
        return EXIT_CONNECTION_ERROR
    return EXIT_OK


def main():
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='LDAP Policy Sync Application')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                       help='Check configuration and directory connectivity instead of syncing')
    parser.add_argument('--dump', action='store_true',
                       help='Print the synchronized store content as JSON')
    parser.add_argument('--output', '-o', help='Write the synchronized store content to a JSON file')

    args = parser.parse_args()

    app = SyncApplication(config_path=args.config)

    if args.health_check:
        health_status = app.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(health_exit_code(health_status))

    def handle_signal(signum, frame):
        logger.warning(f"Received signal {signum}, cancelling")
        app.cancel()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    exit_code = app.run()

    if exit_code == EXIT_OK and (args.dump or args.output):
        snapshot = json.dumps(app.snapshot(), indent=2, sort_keys=True)
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                f.write(snapshot + '\n')
        if args.dump:
            print(snapshot)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()

"""
Logging setup and configuration for LDAP Policy Sync.

This module provides centralized logging configuration with file rotation,
retention policies, container-friendly console output and scrubbing of
directory credentials from every record.
"""

import os
import re
import glob
import time
import logging
import logging.handlers
from dataclasses import dataclass
from typing import Dict, Any, List, Optional

LOG_FILE_NAME = 'policy_sync.log'
ROTATING_MODES = ('daily', 'midnight')

FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'secret', 'token', 'credential',
        'pass', 'pwd'
    ]

    def __init__(self, name: str = ''):
        super().__init__(name)
        keywords = '|'.join(sorted(self.SENSITIVE_KEYWORDS, key=len, reverse=True))
        # key=value and key: value
        self._assignment = re.compile(rf'\b({keywords})(\s*[=:]\s*)(?!["\'])[^\s,}}\])]+', re.IGNORECASE)
        # "key": "value" and 'key': 'value'
        self._quoted = re.compile(rf'(["\'](?:{keywords})["\']\s*:\s*)(["\'])[^"\']*\2', re.IGNORECASE)

    def scrub(self, message: str) -> str:
        message = self._quoted.sub(r'\1\2****\2', message)
        return self._assignment.sub(r'\1\2****', message)

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if record.args:
            try:
                message = record.getMessage()
            except (TypeError, ValueError):
                message = str(record.msg)
            record.args = None
        else:
            message = str(record.msg)

        record.msg = self.scrub(message)
        return True


@dataclass
class LoggingSettings:
    """Logging options read from the `logging` configuration section."""

    level: str = 'INFO'
    log_dir: str = 'logs'
    rotation: str = 'daily'
    retention_days: int = 7
    console_output: bool = True
    console_level: str = 'WARNING'

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]]) -> 'LoggingSettings':
        config = config or {}
        defaults = cls()
        return cls(
            level=str(config.get('level', defaults.level)).upper(),
            log_dir=config.get('log_dir', defaults.log_dir),
            rotation=str(config.get('rotation', defaults.rotation)).lower(),
            retention_days=config.get('retention_days', defaults.retention_days),
            console_output=config.get('console_output', defaults.console_output),
            console_level=str(config.get('console_level', defaults.console_level)).upper(),
        )

    @property
    def rotates(self) -> bool:
        return self.rotation in ROTATING_MODES


def _level(name: str, fallback: int) -> int:
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else fallback


class LoggingManager:
    """
    Installs the application's log handlers on the root logger.

    Records go to policy_sync.log in the configured directory, rotated at
    midnight unless rotation is off, and optionally to stderr. Every handler
    scrubs credentials.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any], force: bool = False) -> None:
        """
        Configure logging from the `logging` configuration section.

        Args:
            config: Logging configuration dictionary
            force: Reconfigure even if logging was already set up
        """
        if self.configured and not force:
            return

        settings = LoggingSettings.from_dict(config)
        self.log_dir = self._usable_log_dir(settings.log_dir)
        self.retention_days = settings.retention_days

        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        root_logger.setLevel(_level(settings.level, logging.INFO))
        scrubber = SensitiveDataFilter()
        for handler in self._build_handlers(settings):
            handler.addFilter(scrubber)
            root_logger.addHandler(handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={settings.level}, dir={self.log_dir}, "
            f"rotation={settings.rotation}, retention={self.retention_days} days, "
            f"console={settings.console_output}"
        )

    def _build_handlers(self, settings: LoggingSettings) -> List[logging.Handler]:
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)
        if settings.rotates:
            file_handler = logging.handlers.TimedRotatingFileHandler(
                log_file, when='midnight', backupCount=self.retention_days, encoding='utf-8'
            )
            file_handler.suffix = '%Y-%m-%d'
        else:
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(_level(settings.level, logging.INFO))
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        handlers = [file_handler]

        if settings.console_output:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(_level(settings.console_level, logging.WARNING))
            console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            handlers.append(console_handler)

        return handlers

    @staticmethod
    def _usable_log_dir(log_dir: Optional[str]) -> str:
        if not log_dir:
            return '.'
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: cannot create log directory {log_dir} ({e}), logging to the current directory")
            return '.'
        return log_dir

    def _cleanup_old_logs(self) -> None:
        """Delete rotated files last modified before the retention window."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff = time.time() - self.retention_days * 86400
        for path in self.get_log_files():
            if os.path.basename(path) == LOG_FILE_NAME:
                continue
            try:
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
            except OSError as e:
                print(f"Warning: cannot remove expired log file {path}: {e}")

    def get_log_files(self) -> List[str]:
        """Return the active log file and its rotated copies."""
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any], force: bool = False) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        force: Reconfigure even if logging was already set up
    """
    _logging_manager.setup_logging(config, force=force)


def get_log_files() -> List[str]:
    return _logging_manager.get_log_files()


class SecurityAuditLogger:
    """Special logger for security-related events."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_bind_attempt(self, address: str, username: str, success: bool):
        """Log directory bind attempts."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Directory bind {status}: {address} user={username}")

    def log_policy_install(self, module_path: str, size: int):
        """Log installation of a policy module for audit trail."""
        self.logger.info(f"Policy module installed: {module_path} ({size} bytes)")

    def log_configuration_access(self, config_file: str):
        """Log configuration file access."""
        self.logger.info(f"Configuration loaded: {config_file}")

    def log_reconfiguration(self, address: str, username: str):
        """Log replacement of the directory connection parameters."""
        self.logger.warning(f"Connection parameters replaced: {address} user={username}")


# Global security logger instance
security_logger = SecurityAuditLogger()

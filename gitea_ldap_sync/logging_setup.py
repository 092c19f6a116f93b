"""
Logging setup and configuration for Gitea LDAP Sync.

This module provides centralized logging configuration: container-friendly
console output, optional file rotation with a retention policy, and scrubbing
of credentials from every log record.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, Optional
from datetime import datetime, timedelta


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'truststore_password', 'token', 'secret',
        'credential', 'pwd', 'authorization', 'access_token',
    ]

    PATTERNS = []
    for _keyword in SENSITIVE_KEYWORDS:
        # key=value
        PATTERNS.append((re.compile(rf'({_keyword}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'))
        # "key": "value"
        PATTERNS.append((re.compile(rf'("{_keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'))
        # 'key': 'value'
        PATTERNS.append((re.compile(rf"('{_keyword}'\s*:\s*')[^']*(')", re.IGNORECASE), r'\1****\2'))
    del _keyword

    # Authorization headers: Bearer, Basic and Gitea's "token" scheme
    PATTERNS.append((re.compile(r'(Authorization:\s*(?:Bearer|Basic|token)\s+)[^\s,}}\]]+', re.IGNORECASE), r'\1****'))

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if record.args:
            try:
                record.msg = record.getMessage()
            except (TypeError, ValueError):
                record.msg = str(record.msg)
            record.args = None

        msg = str(record.msg)
        for pattern, replacement in self.PATTERNS:
            msg = pattern.sub(replacement, msg)
        record.msg = msg

        return True


class LoggingManager:
    """
    Manages logging configuration for the Gitea LDAP Sync application.

    Console output is always available for container deployments; file output
    with daily rotation and retention is enabled when a log directory is set.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]], environ: Optional[Dict[str, str]] = None) -> None:
        """
        Set up logging based on configuration.

        ``LOG_LEVEL`` and ``DEBUG=true`` in the environment take precedence
        over the configured level.

        Args:
            config: Logging configuration dictionary
            environ: Environment mapping, defaults to os.environ
        """
        if self.configured:
            return

        logging_config = config if config else {}
        environ = os.environ if environ is None else environ

        log_level = resolve_level(logging_config.get('level') or 'INFO', environ)
        self.log_dir = logging_config.get('log_dir') or None
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = (logging_config.get('console_level') or log_level).upper()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
            datefmt='%Y-%m-%dT%H:%M:%S'
        )

        sensitive_filter = SensitiveDataFilter()

        if self.log_dir:
            self._ensure_log_directory()
            file_handler = self._create_file_handler(rotation)
            file_handler.setLevel(getattr(logging, log_level, logging.INFO))
            file_handler.setFormatter(detailed_formatter)
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)
            self._cleanup_old_logs()

        if console_enabled or not self.log_dir:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        # APScheduler logs every job execution at INFO
        logging.getLogger('apscheduler').setLevel(max(root_logger.level, logging.WARNING))

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, 'sync.log')

        if rotation.lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Clean up log files older than retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)

        for log_file in glob.glob(os.path.join(self.log_dir, 'sync.log.*')):
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def reset(self) -> None:
        self.configured = False


def resolve_level(configured: str, environ: Dict[str, str]) -> str:
    """Pick the effective level name from config and environment."""
    if environ.get('DEBUG', '').lower() == 'true':
        return 'DEBUG'
    level = (environ.get('LOG_LEVEL') or configured).upper()
    if not isinstance(logging.getLevelName(level), int):
        return 'INFO'
    return level


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]], environ: Optional[Dict[str, str]] = None) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config, environ)


class AuditLogger:
    """Records every mutation sent to Gitea on a dedicated logger."""

    def __init__(self):
        self.logger = logging.getLogger('gitea_ldap_sync.audit')

    def log_mutation(self, operation: str, target: str, success: bool, details: str = ""):
        status = "SUCCESS" if success else "FAILURE"
        message = f"Mutation {status}: {operation} target={target}"
        if details:
            message += f" ({details})"
        if success:
            self.logger.info(message)
        else:
            self.logger.warning(message)


# Global audit logger instance
audit_logger = AuditLogger()

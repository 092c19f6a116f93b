#!/usr/bin/env python3
"""
Unit tests for logging setup, credential scrubbing and the audit logger.
"""

import logging
import logging.handlers
import os
import sys
import tempfile
import unittest
from unittest.mock import patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gitea_ldap_sync.logging_setup import (
    AuditLogger,
    LoggingManager,
    SensitiveDataFilter,
    resolve_level,
)


def make_record(msg, args=None):
    return logging.LogRecord('test', logging.INFO, __file__, 1, msg, args, None)


class TestSensitiveDataFilter(unittest.TestCase):
    """Test cases for SensitiveDataFilter."""

    def setUp(self):
        self.filter = SensitiveDataFilter()

    def scrub(self, msg, args=None):
        record = make_record(msg, args)
        self.assertTrue(self.filter.filter(record))
        return record.getMessage()

    def test_key_value_pairs(self):
        self.assertEqual(self.scrub('password=secret123'), 'password=****')
        self.assertEqual(self.scrub('bind_password = hunter2, next'), 'bind_password = ****, next')

    def test_json_and_python_dicts(self):
        self.assertEqual(self.scrub('{"token": "abc"}'), '{"token": "****"}')
        self.assertEqual(self.scrub("{'bind_password': 'topsecret'}"), "{'bind_password': '****'}")

    def test_authorization_headers(self):
        self.assertEqual(self.scrub('Authorization: token abc123'), 'Authorization: token ****')
        self.assertEqual(self.scrub('Authorization: Basic YWRtaW46eA=='), 'Authorization: Basic ****')

    def test_arguments_are_merged_before_scrubbing(self):
        self.assertEqual(self.scrub('config %s', ('token=abc',)), 'config token=****')

    def test_plain_messages_untouched(self):
        self.assertEqual(self.scrub('User created: alice'), 'User created: alice')


class TestLoggingManager(unittest.TestCase):
    """Test cases for LoggingManager."""

    def setUp(self):
        self.root_logger = logging.getLogger()
        self.saved_handlers = list(self.root_logger.handlers)
        self.saved_level = self.root_logger.level
        self.temp_dir = tempfile.TemporaryDirectory()

    def tearDown(self):
        for handler in list(self.root_logger.handlers):
            handler.close()
        self.root_logger.handlers[:] = self.saved_handlers
        self.root_logger.setLevel(self.saved_level)
        self.temp_dir.cleanup()

    def test_console_only_by_default(self):
        LoggingManager().setup_logging({'level': 'WARNING'}, environ={})

        self.assertEqual(self.root_logger.level, logging.WARNING)
        self.assertEqual(len(self.root_logger.handlers), 1)
        self.assertIsInstance(self.root_logger.handlers[0], logging.StreamHandler)

    def test_file_handler_with_log_dir(self):
        log_dir = os.path.join(self.temp_dir.name, 'logs')

        LoggingManager().setup_logging({'log_dir': log_dir, 'console_output': False}, environ={})

        self.assertTrue(os.path.isdir(log_dir))
        self.assertEqual(len(self.root_logger.handlers), 1)
        self.assertIsInstance(self.root_logger.handlers[0], logging.handlers.TimedRotatingFileHandler)
        self.assertEqual(self.root_logger.handlers[0].backupCount, 7)

    def test_handlers_carry_sensitive_filter(self):
        LoggingManager().setup_logging({}, environ={})

        filters = self.root_logger.handlers[0].filters
        self.assertTrue(any(isinstance(f, SensitiveDataFilter) for f in filters))

    def test_debug_environment_variable(self):
        LoggingManager().setup_logging({'level': 'ERROR'}, environ={'DEBUG': 'true'})

        self.assertEqual(self.root_logger.level, logging.DEBUG)

    def test_apscheduler_is_quieted(self):
        LoggingManager().setup_logging({'level': 'INFO'}, environ={})

        self.assertEqual(logging.getLogger('apscheduler').level, logging.WARNING)

    def test_configure_once(self):
        manager = LoggingManager()
        manager.setup_logging({}, environ={})
        handlers = list(self.root_logger.handlers)

        manager.setup_logging({'level': 'DEBUG'}, environ={})

        self.assertEqual(self.root_logger.handlers, handlers)


class TestResolveLevel(unittest.TestCase):
    """Test cases for resolve_level."""

    def test_log_level_overrides_config(self):
        self.assertEqual(resolve_level('INFO', {'LOG_LEVEL': 'debug'}), 'DEBUG')

    def test_invalid_level_falls_back_to_info(self):
        self.assertEqual(resolve_level('LOUD', {}), 'INFO')

    def test_debug_wins(self):
        self.assertEqual(resolve_level('ERROR', {'DEBUG': 'TRUE', 'LOG_LEVEL': 'WARNING'}), 'DEBUG')


class TestAuditLogger(unittest.TestCase):
    """Test cases for AuditLogger."""

    def test_success_logged_at_info(self):
        audit = AuditLogger()
        with patch.object(audit.logger, 'info') as mock_info:
            audit.log_mutation('create_team', 'eng/backend', True)

        mock_info.assert_called_once_with('Mutation SUCCESS: create_team target=eng/backend')

    def test_failure_logged_at_warning(self):
        audit = AuditLogger()
        with patch.object(audit.logger, 'warning') as mock_warning:
            audit.log_mutation('delete_user', 'bob', False, 'HTTP 500')

        mock_warning.assert_called_once_with('Mutation FAILURE: delete_user target=bob (HTTP 500)')


if __name__ == '__main__':
    unittest.main()

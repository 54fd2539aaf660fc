#!/usr/bin/env python3
"""
Unit tests for logging setup, sensitive data filtering and the SyncLog capability.
"""

import os
import sys
import time
import shutil
import logging
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ou_group_sync.logging_setup import (
    LoggingManager,
    RecordingSyncLog,
    SensitiveDataFilter,
    SyncLog,
)


def make_record(msg, *args):
    return logging.LogRecord('test', logging.INFO, __file__, 1, msg, args, None)


class TestSensitiveDataFilter(unittest.TestCase):
    """Test cases for SensitiveDataFilter."""

    def setUp(self):
        self.filter = SensitiveDataFilter()

    def filtered(self, msg, *args):
        record = make_record(msg, *args)
        self.assertTrue(self.filter.filter(record))
        return record.getMessage()

    def test_patterns(self):
        cases = [
            ('password=secret123', 'password=****'),
            ('client_secret=abc123&scope=x', 'client_secret=****&scope=x'),
            ('{"bind_password": "topsecret"}', '{"bind_password": "****"}'),
            ('{"access_token": "eyJ0eXAi"}', '{"access_token": "****"}'),
            ('Authorization: Bearer abc123token', 'Authorization: Bearer ****'),
            ('Created group \'Devices - Sales\' (group-1)', 'Created group \'Devices - Sales\' (group-1)'),
        ]
        for message, expected in cases:
            with self.subTest(message=message):
                self.assertEqual(self.filtered(message), expected)

    def test_format_args_are_scrubbed(self):
        """Secrets passed as %-format arguments are masked too."""
        self.assertEqual(self.filtered('token=%s', 'abcdef'), 'token=****')

    def test_long_bearer_token(self):
        message = self.filtered('sending Bearer eyJ0eXAiOiJKV1QiLCJhbGciOi')
        self.assertNotIn('eyJ0eXAiOiJKV1QiLCJhbGciOi', message)


class TestSyncLog(unittest.TestCase):
    """Test cases for the logging capability."""

    def test_delegates_to_logger(self):
        logger = logging.getLogger('ou_group_sync.tests.synclog')
        log = SyncLog(logger)

        with self.assertLogs(logger, level='INFO') as captured:
            log.info('Created group')
            log.log(logging.WARNING, 'Skipping unit')

        self.assertEqual(captured.output, [
            'INFO:ou_group_sync.tests.synclog:Created group',
            'WARNING:ou_group_sync.tests.synclog:Skipping unit',
        ])

    def test_recording_log(self):
        log = RecordingSyncLog()
        log.info('one')
        log.error('two')
        log.log(logging.WARNING, 'three')

        self.assertEqual(log.records, [(logging.INFO, 'one'), (logging.ERROR, 'two'), (logging.WARNING, 'three')])
        self.assertEqual(log.messages(logging.ERROR), ['two'])
        self.assertEqual(log.messages(), ['one', 'two', 'three'])


class TestLoggingManager(unittest.TestCase):
    """Test cases for LoggingManager."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='ou_sync_logs_')
        self.root_handlers = list(logging.getLogger().handlers)
        self.root_level = logging.getLogger().level

    def tearDown(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            handler.close()
        root.handlers[:] = self.root_handlers
        root.setLevel(self.root_level)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_setup_creates_log_file(self):
        """Log records are timestamped, leveled and written to the log file."""
        manager = LoggingManager()
        manager.setup_logging({'level': 'INFO', 'log_dir': self.temp_dir, 'console_output': False})

        logging.getLogger('ou_group_sync.tests').info('client_secret=abc123 sync started')
        for handler in logging.getLogger().handlers:
            handler.flush()

        log_file = os.path.join(self.temp_dir, 'ou_group_sync.log')
        self.assertTrue(os.path.exists(log_file))
        with open(log_file, encoding='utf-8') as f:
            content = f.read()
        self.assertIn('[INFO]', content)
        self.assertIn('client_secret=**** sync started', content)
        self.assertNotIn('abc123', content)
        self.assertEqual(manager.get_log_files(), [log_file])

    def test_setup_is_idempotent(self):
        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir, 'console_output': False})
        handler_count = len(logging.getLogger().handlers)
        manager.setup_logging({'log_dir': self.temp_dir, 'console_output': True})
        self.assertEqual(len(logging.getLogger().handlers), handler_count)

    def test_old_logs_removed(self):
        """Rotated logs older than the retention period are deleted."""
        old_log = os.path.join(self.temp_dir, 'ou_group_sync.log.2020-01-01')
        recent_log = os.path.join(self.temp_dir, 'ou_group_sync.log.recent')
        for path in (old_log, recent_log):
            with open(path, 'w') as f:
                f.write('old entry\n')
        old_time = time.time() - 30 * 24 * 3600
        os.utime(old_log, (old_time, old_time))

        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir, 'retention_days': 7, 'console_output': False})

        self.assertFalse(os.path.exists(old_log))
        self.assertTrue(os.path.exists(recent_log))


if __name__ == '__main__':
    unittest.main()

"""
Tests for RentalLedger.log.log
(covers TankHandler, the Qt bridge and the setup helpers).

Run:
    python -m unittest tests.test_log
"""
import logging
import sys
from typing import List

from PySide6.QtCore import QtMsgType

from RentalLedger.log import log
from RentalLedger.log.log import (
    TankHandler,
    qt_message_handler,
    set_logging_level,
    setup_logging,
)
from RentalLedger.signals import signals
from RentalLedger.status import status
from tests.base import BaseTestCase


class LogModuleTests(BaseTestCase):
    """
    Each test starts with a fresh root logger configured by
    setup_logging(enable_stream_handler=False).
    """

    def setUp(self) -> None:
        super().setUp()

        logging.disable(logging.NOTSET)

        self.tank: TankHandler = setup_logging(enable_stream_handler=False,
                                               enable_qt_handler=False,
                                               log_level=logging.DEBUG)
        self.root_logger = logging.getLogger()

    def tearDown(self) -> None:
        setup_logging(enable_stream_handler=False, enable_qt_handler=False)
        super().tearDown()

    def test_setup_logging_installs_tank_handler_only(self):
        self.assertEqual(
            [type(h) for h in self.root_logger.handlers],
            [TankHandler],
        )
        self.assertIs(log.tank_handler, self.tank)

    def test_setup_logging_with_stream_handler(self):
        tank = setup_logging(enable_stream_handler=True, enable_qt_handler=False, log_level=logging.INFO)
        streams = [h for h in self.root_logger.handlers if isinstance(h, logging.StreamHandler)
                   and not isinstance(h, TankHandler)]
        self.assertEqual(len(streams), 1)
        self.assertIs(streams[0].stream, sys.stdout)
        self.assertEqual(tank.level, logging.INFO)
        self.assertEqual(self.root_logger.level, logging.INFO)

    def test_set_logging_level_accepts_valid_levels(self):
        set_logging_level(logging.ERROR)
        self.assertEqual(self.root_logger.level, logging.ERROR)
        for h in self.root_logger.handlers:
            self.assertEqual(h.level, logging.ERROR)

    def test_set_logging_level_rejects_non_int(self):
        with self.assertRaises(ValueError):
            set_logging_level('INFO')  # type: ignore[arg-type]

    def test_set_logging_level_rejects_unknown(self):
        with self.assertRaises(ValueError):
            set_logging_level(1234)

    def test_tank_handler_stores_and_filters(self):
        logging.debug('refreshing access token')
        logging.error('write failed')
        self.assertEqual(len(self.tank.tank), 2)
        errs: List[str] = self.tank.get_logs(logging.ERROR)
        self.assertEqual(len(errs), 1)
        self.assertIn('write failed', errs[0])
        self.tank.clear_logs()
        self.assertEqual(len(self.tank.tank), 0)

    def test_emit_triggers_showLogs_on_error(self):
        triggered: list[bool] = []

        def _slot() -> None:
            triggered.append(True)

        signals.showLogs.connect(_slot)
        try:
            logging.warning('rate limited')
            self.assertFalse(triggered)
            logging.error('should emit signal')
            self.assertTrue(triggered)
        finally:
            signals.showLogs.disconnect(_slot)

    def test_status_exceptions_are_logged(self):
        status.ReadFailedException('HTTP 500')
        errs = self.tank.get_logs(logging.ERROR)
        self.assertEqual(len(errs), 1)
        self.assertIn('HTTP 500', errs[0])

    def test_entries_record_their_source(self):
        logging.info('merge started')
        status.ReadFailedException('HTTP 500')
        self.assertIn('test_log', self.tank.sources())
        self.assertIn('status', self.tank.sources())
        self.assertEqual(len(self.tank.get_logs(source='status')), 1)
        self.assertEqual(self.tank.get_logs(logging.ERROR, source='test_log'), [])

    def test_tank_is_bounded(self):
        tank = TankHandler(size=3)
        for n in range(5):
            tank.emit(logging.makeLogRecord({'msg': f'row {n}', 'levelno': logging.INFO, 'module': 'sync'}))
        self.assertEqual(tank.get_logs(), ['row 2', 'row 3', 'row 4'])

    def test_qt_message_handler_maps_to_logging(self):
        qt_message_handler(QtMsgType.QtInfoMsg, None, 'Qt info')
        qt_message_handler(QtMsgType.QtWarningMsg, None, 'Qt warn')
        msgs = self.tank.get_logs()
        self.assertTrue(any('Qt info' in m for m in msgs))
        self.assertTrue(any('Qt warn' in m for m in msgs))

    def test_qt_message_handler_fatal_exits(self):
        with self.assertRaises(SystemExit):
            qt_message_handler(QtMsgType.QtFatalMsg, None, 'fatal')

    def test_qt_messages_are_tagged(self):
        qt_message_handler(QtMsgType.QtWarningMsg, None, 'Qt warn')
        self.assertEqual(self.tank.get_logs(source='Qt')[0].count('Qt warn'), 1)

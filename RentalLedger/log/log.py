import collections
import logging
import sys

from PySide6.QtCore import QtMsgType, qInstallMessageHandler

from ..signals import signals

LOG_LEVEL = logging.DEBUG
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Oldest entries are dropped past this size
TANK_SIZE = 2000

LEVELS = (logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL)

LogEntry = collections.namedtuple('LogEntry', ('level', 'source', 'message'))

# The tank installed by the last setup_logging() call
tank_handler = None


def set_logging_level(level):
    """Apply ``level`` to the root logger and every installed handler."""
    if not isinstance(level, int):
        raise ValueError('Logging level must be an integer.')
    if level not in LEVELS:
        raise ValueError(f'Invalid logging level {level}, use one of {LEVELS}.')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)


def qt_message_handler(mode, context, message):
    """Routes Qt messages to the 'Qt' logger."""
    logger = logging.getLogger('Qt')
    message = message.strip()

    if mode == QtMsgType.QtDebugMsg:
        logger.debug(message)
    elif mode == QtMsgType.QtInfoMsg:
        logger.info(message)
    elif mode == QtMsgType.QtWarningMsg:
        logger.warning(message)
    elif mode == QtMsgType.QtCriticalMsg:
        logger.error(message)
    elif mode == QtMsgType.QtFatalMsg:
        logger.critical(message)
        sys.exit(1)


def setup_logging(enable_stream_handler=True, enable_qt_handler=True, log_level=LOG_LEVEL):
    """
    Configures the root logger, the activity tank and the Qt message handler.

    Args:
        enable_stream_handler (bool): Log to stdout.
        enable_qt_handler (bool): Route Qt's own messages through Python logging.
        log_level (int): Level applied to the root logger and every handler.

    Returns:
        TankHandler: The installed tank handler.
    """
    global tank_handler

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    if enable_stream_handler:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(log_level)
        root_logger.addHandler(stream_handler)

    tank_handler = TankHandler()
    tank_handler.setFormatter(formatter)
    tank_handler.setLevel(log_level)
    root_logger.addHandler(tank_handler)

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)

    return tank_handler


class TankHandler(logging.Handler):
    """
    Keeps the recent sync, session and store activity in memory.

    Each entry records the module that logged it, so a viewer can show only
    the synchronization or the authentication messages. Errors emit
    ``signals.showLogs``.

    Attributes:
        tank (collections.deque[LogEntry]): The most recent entries, oldest first.
    """

    def __init__(self, size=TANK_SIZE):
        super().__init__()
        self.tank = collections.deque(maxlen=size)

    def emit(self, record):
        try:
            source = 'Qt' if record.name == 'Qt' else record.module
            self.tank.append(LogEntry(record.levelno, source, self.format(record)))
            if record.levelno >= logging.ERROR:
                signals.showLogs.emit()
        except (Exception, KeyboardInterrupt):
            self.handleError(record)

    def get_logs(self, level=logging.NOTSET, source=None):
        """
        Returns the stored messages at or above ``level``.

        Args:
            level (int, optional): The minimum logging level.
            source (str, optional): Only return messages logged by this module, e.g. 'sync'.

        Returns:
            list[str]: The formatted messages, oldest first.
        """
        return [
            e.message for e in self.tank
            if e.level >= level and (source is None or e.source == source)
        ]

    def sources(self):
        """Returns the modules present in the tank, in order of first appearance."""
        return list(dict.fromkeys(e.source for e in self.tank))

    def clear_logs(self):
        self.tank.clear()

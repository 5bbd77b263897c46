"""
Line feed transport for the CDC change applier
Publishes newline-delimited JSON messages from a file or stdin onto the message bus
"""

import json
import sys
import threading
from typing import Dict, Any, Optional, Callable, IO

import structlog

from .message_bus import MessageBus


class LineFeed:
    """
    Reads {"channel": ..., "record": {...}} lines and publishes them

    An optional "table" key is passed on as the message target. Publishing
    blocks while the bus queue is full.
    """

    def __init__(self, path: str, message_bus: MessageBus,
                 on_finished: Optional[Callable[[], None]] = None):
        self.path = path
        self.message_bus = message_bus
        self.on_finished = on_finished

        self.logger = structlog.get_logger()

        self._thread: Optional[threading.Thread] = None
        self._shutdown_requested = False
        self._shutdown_lock = threading.Lock()
        self.finished = threading.Event()

        self._stats = {
            'lines_read': 0,
            'messages_published': 0,
            'errors_count': 0,
            'is_running': False
        }
        self._stats_lock = threading.Lock()

    def start(self) -> None:
        """Start the feed thread"""
        if self._thread and self._thread.is_alive():
            self.logger.warning("Line feed already running", path=self.path)
            return

        self._thread = threading.Thread(target=self._run, name="line_feed")
        self._thread.daemon = True
        self._thread.start()

        self.logger.info("Line feed started", path=self.path)

    def stop(self) -> None:
        with self._shutdown_lock:
            self._shutdown_requested = True

        # A thread blocked on stdin cannot be interrupted; it is a daemon
        if self._thread and self._thread.is_alive() and self.path != '-':
            self._thread.join(timeout=5.0)

        self.logger.info("Line feed stopped", path=self.path)

    def is_running(self) -> bool:
        with self._stats_lock:
            return self._stats['is_running']

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            return self._stats.copy()

    def _is_shutdown_requested(self) -> bool:
        with self._shutdown_lock:
            return self._shutdown_requested

    def _run(self) -> None:
        """Main thread loop"""
        with self._stats_lock:
            self._stats['is_running'] = True
        try:
            if self.path == '-':
                self.feed(sys.stdin)
            else:
                with open(self.path, 'r', encoding='utf-8') as stream:
                    self.feed(stream)
        except OSError as e:
            self.logger.error("Error reading line feed", path=self.path, error=str(e))
            self.message_bus.publish_error("line_feed", e)
        finally:
            with self._stats_lock:
                self._stats['is_running'] = False
            self.logger.info("Line feed finished", path=self.path, **self.get_stats())
            if self.on_finished:
                self.on_finished()
            self.finished.set()

    def feed(self, stream: IO[str]) -> None:
        """Publish every message line of a stream"""
        for line_number, line in enumerate(stream, start=1):
            if self._is_shutdown_requested():
                break
            line = line.strip()
            if not line:
                continue

            with self._stats_lock:
                self._stats['lines_read'] += 1

            try:
                channel, record, table = self.parse_line(line)
            except ValueError as e:
                with self._stats_lock:
                    self._stats['errors_count'] += 1
                self.logger.warning("Skipping invalid feed line",
                                    line_number=line_number, error=str(e))
                self.message_bus.publish_error("line_feed", e)
                continue

            self._publish(channel, record, table)

    @staticmethod
    def parse_line(line: str):
        """Split one feed line into (channel, record payload, table hint)"""
        message = json.loads(line)
        if not isinstance(message, dict):
            raise ValueError("Feed line must be a JSON object")
        channel = message.get('channel')
        if not channel:
            raise ValueError("Feed line has no channel")
        if 'record' not in message:
            raise ValueError("Feed line has no record")
        return str(channel), message['record'], message.get('table')

    def _publish(self, channel: str, record: Any, table: Optional[str]) -> None:
        while not self._is_shutdown_requested() and not self.message_bus.is_shutting_down():
            if self.message_bus.publish_change_record(channel, record, table=table,
                                                       block=True, timeout=1.0):
                with self._stats_lock:
                    self._stats['messages_published'] += 1
                return

"""
Message bus carrying change records and control messages between threads
"""

import queue
import threading
import time
import uuid
from typing import Any, Dict, Optional, Callable, List
from dataclasses import dataclass
from enum import Enum
import structlog


class MessageType(Enum):
    """Types of messages in the bus"""
    CHANGE_RECORD = "change_record"
    SHUTDOWN = "shutdown"
    ERROR = "error"
    BRANCH_FAILED = "branch_failed"


@dataclass
class Message:
    """Message structure for the bus

    source is the channel (topic or subscription) a change record arrived on.
    """
    message_type: MessageType
    source: str
    target: Optional[str] = None
    data: Any = None
    timestamp: float = None
    message_id: str = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = time.time()
        if self.message_id is None:
            self.message_id = f"{self.source}-{uuid.uuid4().hex[:12]}"


class MessageBus:
    """Thread-safe message bus for inter-thread communication"""

    def __init__(self, max_queue_size: int = 10000):
        self.logger = structlog.get_logger()
        self.max_queue_size = max_queue_size

        self._message_queue = queue.Queue(maxsize=max_queue_size)

        self._subscribers: Dict[MessageType, List[Callable]] = {}
        self._subscriber_lock = threading.RLock()

        self._stats = {
            'messages_sent': 0,
            'messages_processed': 0,
            'messages_dropped': 0,
            'subscribers_count': 0
        }
        self._stats_lock = threading.Lock()

        self._shutdown_requested = False
        self._shutdown_lock = threading.Lock()

        self.logger.info("Message bus initialized", max_queue_size=max_queue_size)

    def subscribe(self, message_type: MessageType, callback: Callable[[Message], None]) -> None:
        """Subscribe to specific message type"""
        with self._subscriber_lock:
            self._subscribers.setdefault(message_type, []).append(callback)
            with self._stats_lock:
                self._stats['subscribers_count'] = sum(len(subs) for subs in self._subscribers.values())

        self.logger.debug("Subscribed to message type",
                          message_type=message_type.value,
                          callback=getattr(callback, '__name__', str(callback)))

    def unsubscribe(self, message_type: MessageType, callback: Callable[[Message], None]) -> None:
        """Unsubscribe from specific message type"""
        callback_name = getattr(callback, '__name__', str(callback))
        with self._subscriber_lock:
            try:
                self._subscribers.get(message_type, []).remove(callback)
            except ValueError:
                self.logger.warning("Callback not found in subscribers",
                                    message_type=message_type.value,
                                    callback=callback_name)
                return
            with self._stats_lock:
                self._stats['subscribers_count'] = sum(len(subs) for subs in self._subscribers.values())

        self.logger.debug("Unsubscribed from message type",
                          message_type=message_type.value,
                          callback=callback_name)

    def publish(self, message: Message, block: bool = False, timeout: Optional[float] = None) -> bool:
        """Publish message to the bus

        With block=True the caller waits for queue space (up to timeout)
        instead of having the message dropped.
        """
        if self._is_shutdown_requested():
            self.logger.debug("Message bus is shutting down, dropping message",
                              message_type=message.message_type.value,
                              source=message.source)
            return False

        try:
            self._message_queue.put(message, block=block, timeout=timeout)
        except queue.Full:
            with self._stats_lock:
                self._stats['messages_dropped'] += 1

            self.logger.warning("Message queue is full, message not accepted",
                                message_type=message.message_type.value,
                                source=message.source,
                                queue_size=self._message_queue.qsize())
            return False

        with self._stats_lock:
            self._stats['messages_sent'] += 1
        return True

    def publish_change_record(self, channel: str, record: Any, table: Optional[str] = None,
                              block: bool = False, timeout: Optional[float] = None) -> bool:
        """Publish a change record (ChangeRecord or payload dict) received on a channel"""
        message = Message(
            message_type=MessageType.CHANGE_RECORD,
            source=channel,
            target=table,
            data=record
        )
        return self.publish(message, block=block, timeout=timeout)

    def publish_shutdown(self, source: str) -> bool:
        """Publish shutdown message"""
        message = Message(
            message_type=MessageType.SHUTDOWN,
            source=source,
            data="Shutdown requested"
        )
        return self.publish(message)

    def publish_error(self, source: str, error: Exception, target: str = None) -> bool:
        """Publish error message"""
        message = Message(
            message_type=MessageType.ERROR,
            source=source,
            target=target,
            data=str(error)
        )
        return self.publish(message)

    def publish_branch_failed(self, table: str, reason: str) -> bool:
        """Publish notice that a table branch halted"""
        message = Message(
            message_type=MessageType.BRANCH_FAILED,
            source=table,
            target=table,
            data=reason
        )
        return self.publish(message)

    def process_messages(self, timeout: float = 1.0) -> None:
        """Process messages from the queue until timeout or shutdown"""
        deadline = time.time() + timeout
        while not self._is_shutdown_requested():
            remaining_timeout = deadline - time.time()
            if remaining_timeout <= 0:
                break

            try:
                message = self._message_queue.get(timeout=remaining_timeout)
            except queue.Empty:
                break

            try:
                self._process_message(message)
            finally:
                self._message_queue.task_done()

            with self._stats_lock:
                self._stats['messages_processed'] += 1

    def drain(self) -> int:
        """Deliver everything already queued, ignoring the shutdown flag"""
        delivered = 0
        while True:
            try:
                message = self._message_queue.get_nowait()
            except queue.Empty:
                return delivered
            try:
                self._process_message(message)
            finally:
                self._message_queue.task_done()
            delivered += 1
            with self._stats_lock:
                self._stats['messages_processed'] += 1

    def _process_message(self, message: Message) -> None:
        """Process a single message"""
        with self._subscriber_lock:
            subscribers = list(self._subscribers.get(message.message_type, []))

        if not subscribers:
            self.logger.debug("No subscribers for message type",
                              message_type=message.message_type.value)
            return

        for callback in subscribers:
            try:
                callback(message)
            except Exception as e:
                self.logger.error("Error in message subscriber",
                                  callback=getattr(callback, '__name__', str(callback)),
                                  message_type=message.message_type.value,
                                  error=str(e))

    def _is_shutdown_requested(self) -> bool:
        with self._shutdown_lock:
            return self._shutdown_requested

    def is_shutting_down(self) -> bool:
        return self._is_shutdown_requested()

    def request_shutdown(self) -> None:
        """Request shutdown of the message bus"""
        # Wake up any waiting threads
        self.publish_shutdown("message_bus")

        with self._shutdown_lock:
            self._shutdown_requested = True

        self.logger.info("Message bus shutdown requested")

    def get_stats(self) -> Dict[str, Any]:
        """Get message bus statistics"""
        with self._stats_lock:
            return self._stats.copy()

    def get_queue_size(self) -> int:
        return self._message_queue.qsize()

    def is_empty(self) -> bool:
        return self._message_queue.empty()

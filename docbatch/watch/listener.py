import json
import threading
import uuid
from collections.abc import Callable
from typing import Any

import psycopg

from docbatch.logging.logger import Log
from docbatch.watch.events import ChangeNotification, NotificationCallback

RECORDS_CHANNEL = "processing_records"
LOGS_CHANNEL = "processing_logs"
CHANNELS = (RECORDS_CHANNEL, LOGS_CHANNEL)

NOTIFY_WAIT_SECONDS = 1.0
RECONNECT_DELAY_SECONDS = 5.0


def decode_notification(channel: str, payload: str) -> ChangeNotification | None:
    """Turn a raw NOTIFY payload into a ChangeNotification, or None if it is malformed."""
    try:
        data = json.loads(payload)
    except ValueError:
        return None
    if not isinstance(data, dict) or "id" not in data:
        return None
    if channel == RECORDS_CHANNEL:
        return ChangeNotification(
            channel=channel,
            id=str(data["id"]),
            processing_id=str(data["id"]),
            batch_context=data.get("batch_context"),
            version=data.get("version"),
            status=data.get("status"),
        )
    if channel == LOGS_CHANNEL and data.get("processing_id"):
        return ChangeNotification(
            channel=channel,
            id=str(data["id"]),
            processing_id=str(data["processing_id"]),
        )
    return None


class ChangeListener:
    """Background LISTEN loop that fans database change notifications out to subscribers."""

    def __init__(self, connect: Callable[[], psycopg.Connection[Any]]) -> None:
        self._connect = connect
        self._conn: psycopg.Connection[Any] | None = None
        self._subscribers: dict[str, NotificationCallback] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Open the LISTEN connection and start the background thread.

        Raises:
            psycopg.Error: if the first connection cannot be opened.
        """
        if self.running:
            return
        self._conn = self._open()
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="change-listener", daemon=True
        )
        self._thread.start()
        Log.info(f"Listening for changes on {', '.join(CHANNELS)}")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._close()

    def subscribe(self, callback: NotificationCallback) -> str:
        token = uuid.uuid4().hex
        with self._lock:
            self._subscribers[token] = callback
        return token

    def unsubscribe(self, token: str) -> None:
        with self._lock:
            self._subscribers.pop(token, None)

    def publish(self, notification: ChangeNotification) -> None:
        """Deliver a notification to every current subscriber."""
        with self._lock:
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(notification)
            except Exception:
                Log.exception(f"Change subscriber failed on {notification.channel} {notification.id}")

    def _open(self) -> psycopg.Connection[Any]:
        conn = self._connect()
        for channel in CHANNELS:
            conn.execute(f"LISTEN {channel}")
        return conn

    def _close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except psycopg.Error as exc:
                Log.debug(f"Error closing listen connection: {exc}")
            self._conn = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                if self._conn is None:
                    self._conn = self._open()
                    Log.info("Change listener reconnected")
                for notify in self._conn.notifies(timeout=NOTIFY_WAIT_SECONDS):
                    notification = decode_notification(notify.channel, notify.payload)
                    if notification is None:
                        Log.warning(f"Ignoring malformed notification on {notify.channel}")
                    else:
                        self.publish(notification)
                    if self._stop.is_set():
                        break
            except psycopg.Error as exc:
                if self._stop.is_set():
                    break
                Log.warning(
                    f"Change listener lost its connection ({exc}), "
                    f"reconnecting in {RECONNECT_DELAY_SECONDS:.0f}s"
                )
                self._close()
                self._stop.wait(RECONNECT_DELAY_SECONDS)

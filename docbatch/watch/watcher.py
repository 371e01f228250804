"""Change propagation for one watcher.

A ``Watch`` combines two sources: database notifications pushed by the
``ChangeListener`` and a poll loop that compares fresh reads with the last
snapshot. Both feed the same snapshot map, so a version is reported once no
matter which source saw it first.
"""

import threading

from docbatch.config.settings import Settings
from docbatch.domain.exceptions import ProcessingNotFoundError, ValidationError
from docbatch.domain.models import ProcessingRecord
from docbatch.logging.logger import Log
from docbatch.processing.manager import ProcessingRecordManager
from docbatch.watch.events import (
    ALL,
    LOG_APPENDED,
    NEW_BATCH,
    PROGRESS,
    RECORD_UPDATED,
    STATUS_CHANGED,
    ChangeNotification,
    WatchCallback,
    WatchEvent,
    crossed_step,
)
from docbatch.watch.listener import LOGS_CHANNEL, RECORDS_CHANNEL, ChangeListener


class Watch:
    """Delivers changes for one processing record, or all active batches of a context."""

    def __init__(
        self,
        *,
        target: str,
        callback: WatchCallback,
        manager: ProcessingRecordManager,
        settings: Settings,
        batch_context: str | None = None,
        listener: ChangeListener | None = None,
    ) -> None:
        if target == ALL and not batch_context:
            raise ValidationError("Watching all batches requires a batch_context")
        self.target = target
        self.batch_context = batch_context
        self._callback = callback
        self._manager = manager
        self._listener = listener
        self._single = target != ALL
        self._interval = (
            settings.watch_poll_seconds_single
            if self._single
            else settings.watch_poll_seconds_all
        )
        self._backoff_factor = max(1, settings.watch_error_backoff_factor)
        self._step = settings.progress_notify_step

        self._snapshots: dict[str, ProcessingRecord] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._token: str | None = None
        self._delivering: int | None = None

    @property
    def active(self) -> bool:
        return not self._stop.is_set()

    @property
    def polling(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def snapshot(self) -> dict[str, ProcessingRecord]:
        with self._lock:
            return dict(self._snapshots)

    def start(self) -> None:
        """Take the initial snapshot, subscribe to push changes and start polling.

        Raises:
            ProcessingNotFoundError: when watching a single record that does not exist.
        """
        for record in self._fetch():
            self._snapshots[record.id] = record
        if self._single and self.target not in self._snapshots:
            raise ProcessingNotFoundError(f"Processing {self.target} not found")

        if self._listener is not None:
            self._token = self._listener.subscribe(self._on_notification)
        if self._has_active():
            self._start_polling()

    def stop(self) -> None:
        """Stop delivery. No callback runs once this returns.

        Called from inside a callback, the poll thread is not joined: that
        thread may be waiting for the delivery lock held by the caller, and
        the stop flag is enough to end it.
        """
        with self._lock:
            self._stop.set()
            from_callback = self._delivering == threading.get_ident()
        if self._listener is not None and self._token is not None:
            self._listener.unsubscribe(self._token)
            self._token = None
        thread = self._thread
        if thread is not None and thread is not threading.current_thread() and not from_callback:
            thread.join()
        self._thread = None

    def poll_once(self) -> bool:
        """Run one poll cycle. Returns False once there is nothing left to watch."""
        records = self._fetch()
        seen = {record.id for record in records}
        for record in records:
            self._observe(record)

        if not self._single:
            for processing_id, held in self.snapshot().items():
                if processing_id in seen or held.is_terminal:
                    continue
                # dropped out of the active set: report where it ended up
                latest = self._manager.get(processing_id)
                if latest is not None:
                    self._observe(latest)

        return self._has_active()

    def _fetch(self) -> list[ProcessingRecord]:
        if self._single:
            record = self._manager.get(self.target)
            return [record] if record is not None else []
        if self.batch_context is None:
            return []
        return self._manager.list_active(self.batch_context)

    def _has_active(self) -> bool:
        with self._lock:
            if self._single:
                record = self._snapshots.get(self.target)
                return record is not None and not record.is_terminal
            return any(not record.is_terminal for record in self._snapshots.values())

    def _start_polling(self) -> None:
        with self._lock:
            if self._stop.is_set() or self.polling:
                return
            self._thread = threading.Thread(
                target=self._run,
                name=f"watch-{self.target[:8]}",
                daemon=True,
            )
            self._thread.start()

    def _run(self) -> None:
        interval = self._interval
        while not self._stop.wait(interval):
            try:
                keep_going = self.poll_once()
            except Exception as exc:
                interval = self._interval * self._backoff_factor
                Log.warning(f"Watch {self.target} poll failed, next try in {interval:.0f}s: {exc}")
                continue
            interval = self._interval
            if not keep_going:
                Log.debug(f"Watch {self.target}: nothing active, polling stopped")
                break

    def _observe(self, record: ProcessingRecord) -> None:
        with self._lock:
            if self._stop.is_set():
                return
            previous = self._snapshots.get(record.id)
            if previous is not None and record.version <= previous.version:
                return
            self._snapshots[record.id] = record

            if previous is None:
                self._deliver(WatchEvent(NEW_BATCH, record.id, record=record))
            elif previous.status != record.status:
                self._deliver(
                    WatchEvent(
                        STATUS_CHANGED,
                        record.id,
                        record=record,
                        previous_status=previous.status,
                    )
                )
            elif crossed_step(previous.progress, record.progress, self._step):
                self._deliver(
                    WatchEvent(
                        PROGRESS,
                        record.id,
                        record=record,
                        previous_status=previous.status,
                    )
                )

    def _on_notification(self, notification: ChangeNotification) -> None:
        if self._stop.is_set() or not self._concerns(notification):
            return
        if notification.channel == RECORDS_CHANNEL:
            self._on_record_change(notification)
        elif notification.channel == LOGS_CHANNEL:
            entry = self._manager.find_log(notification.id)
            if entry is not None:
                with self._lock:
                    if not self._stop.is_set():
                        self._deliver(
                            WatchEvent(LOG_APPENDED, entry.processing_id, log_entry=entry)
                        )

    def _concerns(self, notification: ChangeNotification) -> bool:
        if self._single:
            return notification.processing_id == self.target
        if notification.channel == RECORDS_CHANNEL:
            return notification.batch_context == self.batch_context
        with self._lock:
            return notification.processing_id in self._snapshots

    def _on_record_change(self, notification: ChangeNotification) -> None:
        with self._lock:
            held = self._snapshots.get(notification.processing_id)
        if (
            held is not None
            and notification.version is not None
            and notification.version <= held.version
        ):
            return

        record = self._manager.get(notification.processing_id)
        if record is None:
            return
        with self._lock:
            if self._stop.is_set():
                return
            previous = self._snapshots.get(record.id)
            if previous is not None and record.version <= previous.version:
                return
            self._snapshots[record.id] = record
            if previous is None:
                self._deliver(WatchEvent(NEW_BATCH, record.id, record=record))
            else:
                self._deliver(
                    WatchEvent(
                        RECORD_UPDATED,
                        record.id,
                        record=record,
                        previous_status=previous.status,
                    )
                )
        if not record.is_terminal:
            self._start_polling()

    def _deliver(self, event: WatchEvent) -> None:
        # always called with self._lock held
        self._delivering = threading.get_ident()
        try:
            self._callback(event)
        except Exception:
            Log.exception(f"Watch callback failed for {event.type} on {event.processing_id}")
        finally:
            self._delivering = None

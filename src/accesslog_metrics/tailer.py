"""
Follow a growing access log and feed its lines to the metrics.

One background thread owns the file: it opens it, seeks to the end (earlier
content is never processed), then wakes up on every filesystem event for the
path. Writes trigger a read of everything appended since the last offset;
anything else (the file was moved, removed or recreated, as log rotation
does) makes the tailer drop the watch and reopen the path after a cool-down.

Design Decisions:
    - Uses watchdog (inotify on Linux) rather than polling
    - Truncation in place resets the offset to the new size
    - Partial lines are buffered until their newline arrives
    - Any error other than a missing file ends the process, through
      TailSupervisor, instead of leaving a dead watcher behind
"""
from __future__ import annotations

import logging
import os
import queue
import threading
import time
from typing import BinaryIO, Callable, Optional

from watchdog.events import (
    EVENT_TYPE_CLOSED,
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from accesslog_metrics.config import REOPEN_DELAY_S
from accesslog_metrics.errors import ParseError
from accesslog_metrics.metrics import LogMetrics
from accesslog_metrics.processor import LineProcessor

logger = logging.getLogger(__name__)

# What the watch reports to the tailer
WRITE = "write"
REOPEN = "reopen"

_WRITE_EVENTS = (EVENT_TYPE_MODIFIED, EVENT_TYPE_CLOSED)
_REOPEN_EVENTS = (EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED)


class _LogFileEventHandler(FileSystemEventHandler):
    """Translate watchdog events on the parent directory into WRITE/REOPEN for one file."""

    def __init__(self, path: str, events: "queue.Queue[str]"):
        super().__init__()
        self.path = path
        self.events = events

    def on_any_event(self, event) -> None:
        if event.is_directory:
            return
        paths = {os.path.abspath(os.fsdecode(event.src_path))}
        dest = getattr(event, "dest_path", None)
        if dest:
            paths.add(os.path.abspath(os.fsdecode(dest)))
        if self.path not in paths:
            return

        logger.debug("event: %r", event)
        if event.event_type in _WRITE_EVENTS:
            self.events.put(WRITE)
        elif event.event_type in _REOPEN_EVENTS:
            self.events.put(REOPEN)
        # opened / closed_no_write: our own reads, ignored


class FileWatch:
    """watchdog observer on the file's directory, forwarding events into a queue."""

    def __init__(self, path: str, events: "queue.Queue[str]"):
        self.observer = Observer()
        self.observer.schedule(
            _LogFileEventHandler(path, events),
            os.path.dirname(path),
            recursive=False,
        )

    def start(self) -> None:
        self.observer.start()

    def stop(self) -> None:
        self.observer.stop()
        self.observer.join()


class LogTailer:
    """
    Tail a single access log and update LogMetrics for each new line.

    Attributes:
        path: Absolute path of the log file.
        offset: Byte position up to which the file has been read.
        buffer: Bytes read after the last newline, waiting for the rest of the line.
    """

    def __init__(
        self,
        path: str,
        processor: LineProcessor,
        metrics: LogMetrics,
        reopen_delay: float = REOPEN_DELAY_S,
        watch_factory: Callable[[str, "queue.Queue[str]"], FileWatch] = FileWatch,
    ):
        self.path = os.path.abspath(path)
        self.processor = processor
        self.metrics = metrics
        self.reopen_delay = reopen_delay
        self.watch_factory = watch_factory
        self.file: Optional[BinaryIO] = None
        self.offset = 0
        self.buffer = b""

    def open(self) -> bool:
        """Open the file; False if it doesn't exist (yet)."""
        try:
            self.file = open(self.path, "rb")
        except FileNotFoundError:
            logger.info("File %s is missing, retrying...", self.path)
            return False
        self.offset = 0
        self.buffer = b""
        return True

    def close(self) -> None:
        if self.file is not None:
            self.file.close()
            self.file = None

    def seek_to_end(self) -> None:
        self.offset = self.file.seek(0, os.SEEK_END)

    def read_available(self) -> int:
        """Read everything appended since the last call and process complete lines."""
        size = os.fstat(self.file.fileno()).st_size
        if size < self.offset:
            logger.info("Truncation detected (%d -> %d)", self.offset, size)
            self.offset = size
            self.buffer = b""

        self.file.seek(self.offset)
        data = self.file.read()
        self.offset += len(data)
        self.buffer += data

        end = self.buffer.rfind(b"\n")
        if end == -1:
            return 0
        complete, self.buffer = self.buffer[:end], self.buffer[end + 1:]
        lines = complete.split(b"\n")
        for raw in lines:
            self.handle_line(raw.decode("utf-8", errors="replace"))
        return len(lines)

    def handle_line(self, line: str) -> None:
        try:
            observation = self.processor.process(line)
        except ParseError as e:
            logger.warning("%s", e)
            self.metrics.record_error()
            return
        if observation is None:
            return

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("%s", line)
            for key, value in zip(self.processor.labels, observation.labels):
                logger.debug("    %s: %s", key, value)
        self.metrics.observe(observation)

    def watch_once(self) -> None:
        """
        Tail the file until it is rotated or removed.

        Returns without error if the file is missing or once the watch needs
        to be re-established. Other errors propagate.
        """
        if not self.open():
            return
        try:
            events: "queue.Queue[str]" = queue.Queue()
            watch = self.watch_factory(self.path, events)
            watch.start()
            try:
                self.seek_to_end()
                self.metrics.set_active(True)
                logger.info("Watch established on %s", self.path)

                while True:
                    event = events.get()
                    if event != WRITE:
                        logger.info("Restarting watch")
                        self.metrics.set_active(False)
                        return
                    self.read_available()
            finally:
                watch.stop()
        finally:
            self.close()

    def run_forever(self) -> None:
        while True:
            self.watch_once()
            time.sleep(self.reopen_delay)


class TailSupervisor:
    """
    Run a LogTailer in a background thread and exit the process if it ever stops.

    The tailer is never supposed to return; an exception or a return both end
    the process with status 1.
    """

    def __init__(self, tailer: LogTailer, exit: Callable[[int], None] = os._exit):
        self.tailer = tailer
        self._exit = exit
        self.results: "queue.Queue[Optional[BaseException]]" = queue.Queue()

    def start(self) -> None:
        threading.Thread(target=self._worker, name="log-tailer", daemon=True).start()
        threading.Thread(target=self._supervise, name="log-tailer-supervisor", daemon=True).start()

    def _worker(self) -> None:
        try:
            self.tailer.run_forever()
        except BaseException as e:
            self.results.put(e)
        else:
            self.results.put(None)

    def _supervise(self) -> None:
        error = self.results.get()
        if error is not None:
            logger.critical("Log tailer crashed: %s", error, exc_info=error)
        else:
            logger.critical("Log tailer stopped")
        self._exit(1)

"""TelemetryManager: consumer side of the supervisor's diagnostic event stream.

Responsibilities:
1. Receive events from node supervisors via handle_event()
2. Filter by configured granularity
3. Queue for export on a background thread
4. Dispatch to every exporter with failure isolation
5. Track health metrics

The supervisor must never stall on diagnostics, so handle_event() only ever
does put_nowait(): a full queue drops the event and counts the drop. Drops
and total exporter failures are logged in aggregate, every _LOG_INTERVAL
events, not per event.

Thread Safety:
    - handle_event() may be called from any supervisor driver thread
    - _export_loop() runs on the background export thread
    - _events_dropped is guarded by _dropped_lock (both sides write it)
    - Other metrics are written by the export thread only
    - health_metrics reads are approximately consistent
"""

import queue
import threading
from typing import Any

import structlog

from stalwart.contracts.events import TelemetryEvent
from stalwart.telemetry.config import RuntimeTelemetryConfig
from stalwart.telemetry.errors import TelemetryExporterError
from stalwart.telemetry.filtering import should_emit
from stalwart.telemetry.protocols import ExporterProtocol

logger = structlog.get_logger(__name__)


class TelemetryManager:
    """Queues supervision events and fans them out to exporters.

    Failure handling:
    - One exporter failing does not affect the others
    - If ALL exporters fail max_consecutive_failures times in a row:
      - fail_on_total_exporter_failure=True: flush() raises TelemetryExporterError
      - fail_on_total_exporter_failure=False: telemetry is disabled with a
        CRITICAL log line and the pipeline carries on

    Example:
        manager = TelemetryManager(config, exporters=[MemoryExporter()])
        supervisor = PipelineSupervisor(run_id="run-1", telemetry=manager)
        ...
        manager.flush()
        manager.close()
    """

    _LOG_INTERVAL = 100

    def __init__(
        self,
        config: RuntimeTelemetryConfig,
        exporters: list[ExporterProtocol],
    ) -> None:
        """Initialize the manager and start its export thread.

        Args:
            config: Granularity, queue size and failure thresholds
            exporters: Configured exporter instances. May be empty, in which
                case every event is ignored.
        """
        self._config = config
        self._exporters = exporters
        self._consecutive_total_failures = 0

        self._events_emitted = 0
        self._events_filtered = 0
        self._events_dropped = 0
        self._exporter_failures: dict[str, int] = {}
        self._last_logged_drop_count = 0

        self._disabled = False
        self._stored_exception: TelemetryExporterError | None = None

        self._shutdown_event = threading.Event()
        self._dropped_lock = threading.Lock()
        self._export_thread_ready = threading.Event()

        self._queue: queue.Queue[TelemetryEvent | None] = queue.Queue(maxsize=config.queue_size)

        # Non-daemon so queued events are not lost at interpreter exit
        self._export_thread = threading.Thread(
            target=self._export_loop,
            name="telemetry-export",
            daemon=False,
        )
        self._export_thread.start()
        self._export_thread_ready.wait(timeout=5.0)

    @property
    def exporters(self) -> list[ExporterProtocol]:
        return list(self._exporters)

    def _export_loop(self) -> None:
        """Export thread: drain the queue until the None sentinel arrives."""
        self._export_thread_ready.set()

        while True:
            event = self._queue.get()
            try:
                if event is None:
                    break
                self._dispatch_to_exporters(event)
            except TelemetryExporterError as e:
                logger.error("Telemetry export failed", error=str(e))
                self._stored_exception = e
            except Exception as e:
                logger.error("Telemetry export loop failed unexpectedly", error=str(e))
            finally:
                # task_done() for every get(), sentinel included, or flush() hangs
                self._queue.task_done()

    def _dispatch_to_exporters(self, event: TelemetryEvent) -> None:
        failures = 0
        for exporter in self._exporters:
            try:
                exporter.export(event)
            except Exception as e:
                failures += 1
                self._exporter_failures[exporter.name] = self._exporter_failures.get(exporter.name, 0) + 1
                logger.warning(
                    "Telemetry exporter failed",
                    exporter=exporter.name,
                    event_type=type(event).__name__,
                    error=str(e),
                )

        if failures < len(self._exporters):
            self._events_emitted += 1
            self._consecutive_total_failures = 0
            return

        self._consecutive_total_failures += 1
        with self._dropped_lock:
            self._events_dropped += 1
            self._log_drops_if_needed(cause="all_exporters_failed")

        if self._consecutive_total_failures < self._config.max_consecutive_failures:
            return
        if self._config.fail_on_total_exporter_failure:
            raise TelemetryExporterError(
                "all",
                f"All {len(self._exporters)} exporters failed {self._consecutive_total_failures} consecutive times",
            )
        logger.critical(
            "Telemetry disabled after repeated total exporter failures",
            consecutive_failures=self._consecutive_total_failures,
            events_dropped=self._events_dropped,
        )
        self._disabled = True

    def handle_event(self, event: TelemetryEvent) -> None:
        """Queue an event for export without ever blocking the caller.

        Safe to call from any thread.
        """
        if self._shutdown_event.is_set() or self._disabled or not self._exporters:
            return

        if not should_emit(event, self._config.granularity):
            self._events_filtered += 1
            return

        if not self._export_thread.is_alive():
            logger.critical("Telemetry export thread died, disabling telemetry")
            self._disabled = True
            return

        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._dropped_lock:
                self._events_dropped += 1
                self._log_drops_if_needed(cause="queue_full")

    def _log_drops_if_needed(self, *, cause: str) -> None:
        """Log an aggregate drop line. Caller holds _dropped_lock."""
        if self._events_dropped - self._last_logged_drop_count >= self._LOG_INTERVAL:
            logger.warning(
                "Telemetry events dropped",
                cause=cause,
                dropped_since_last_log=self._events_dropped - self._last_logged_drop_count,
                dropped_total=self._events_dropped,
            )
            self._last_logged_drop_count = self._events_dropped

    @property
    def health_metrics(self) -> dict[str, Any]:
        """Snapshot of telemetry health for monitoring.

        - events_emitted: delivered to at least one exporter
        - events_filtered: rejected by granularity
        - events_dropped: queue full, or every exporter failed
        - exporter_failures: per-exporter failure counts
        - consecutive_total_failures: current total-failure streak
        - queue_depth / queue_maxsize: queue occupancy
        """
        with self._dropped_lock:
            events_dropped = self._events_dropped
        return {
            "events_emitted": self._events_emitted,
            "events_filtered": self._events_filtered,
            "events_dropped": events_dropped,
            "exporter_failures": self._exporter_failures.copy(),
            "consecutive_total_failures": self._consecutive_total_failures,
            "queue_depth": self._queue.qsize(),
            "queue_maxsize": self._queue.maxsize,
        }

    def flush(self) -> None:
        """Wait for queued events to be exported, then flush each exporter.

        Raises:
            TelemetryExporterError: If fail_on_total_exporter_failure=True and
                every exporter failed repeatedly
        """
        if not self._shutdown_event.is_set():
            self._queue.join()

        if self._stored_exception is not None:
            exc = self._stored_exception
            self._stored_exception = None
            raise exc

        for exporter in self._exporters:
            try:
                exporter.flush()
            except Exception as e:
                logger.warning("Exporter flush failed", exporter=exporter.name, error=str(e))

    def close(self) -> None:
        """Stop the export thread and close exporters. Idempotent.

        Shutdown Sequence:
        1. Reject new events
        2. Enqueue the sentinel, discarding queued events if the queue is
           full (nothing new can arrive, so draining is safe)
        3. Join the export thread, which exports what precedes the sentinel
        4. Close exporters

        The sentinel goes in before any join(): joining the queue first
        races the thread blocking on get() with no sentinel coming.
        """
        if self._shutdown_event.is_set():
            return
        self._shutdown_event.set()

        sentinel_sent = False
        for _ in range(self._queue.maxsize + 1):
            try:
                self._queue.put(None, timeout=0.1)
                sentinel_sent = True
                break
            except queue.Full:
                try:
                    discarded = self._queue.get_nowait()
                    self._queue.task_done()
                    if discarded is not None:
                        with self._dropped_lock:
                            self._events_dropped += 1
                except queue.Empty:
                    continue

        if not sentinel_sent:
            logger.error("Failed to send telemetry shutdown sentinel, export thread may hang")

        self._export_thread.join(timeout=5.0)
        if self._export_thread.is_alive():
            logger.error("Telemetry export thread did not exit cleanly within timeout")

        logger.info("Telemetry manager closing", **self.health_metrics)
        for exporter in self._exporters:
            try:
                exporter.close()
            except Exception as e:
                logger.warning("Exporter close failed", exporter=exporter.name, error=str(e))

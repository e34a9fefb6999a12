"""
Append-only audit trail for escalation transitions and component errors.

The engine only ever appends; it never reads the trail back. Sink failures are
logged and swallowed at this boundary so a broken disk cannot stop an
escalation.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Protocol

import structlog

from vitalwatch.config import AuditConfig
from vitalwatch.domain.models import AuditRecord, EscalationState

logger = structlog.get_logger(__name__)


class AuditSink(Protocol):
    """Persistence collaborator for the compliance trail."""

    def append(self, record: AuditRecord) -> None: ...


class InMemoryAuditSink:
    """Keeps records in a list. Used in development and tests."""

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []

    def append(self, record: AuditRecord) -> None:
        self._records.append(record)

    @property
    def records(self) -> tuple[AuditRecord, ...]:
        return tuple(self._records)


class JsonLinesAuditSink:
    """
    Appends one JSON document per record to a file.

    ``append`` only serializes and queues the line; a single writer thread
    does the file I/O in submission order, so callers on the event loop never
    wait on the disk. ``flush`` blocks until every queued line is written.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-jsonl")
        self._last_write: Future[None] | None = None
        self.write_failures = 0

    def append(self, record: AuditRecord) -> None:
        line = record.model_dump_json() + "\n"
        self._last_write = self._writer.submit(self._write, line)

    def _write(self, line: str) -> None:
        try:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line)
        except OSError as e:
            self.write_failures += 1
            logger.error("audit_write_failed", path=str(self.path), error=str(e))

    def flush(self) -> None:
        # one worker runs jobs in order, so the last one finishing means all did
        if self._last_write is not None:
            self._last_write.result()

    def close(self) -> None:
        self._writer.shutdown(wait=True)


def create_audit_sink(config: AuditConfig) -> AuditSink:
    if config.sink == "jsonl":
        return JsonLinesAuditSink(config.path)
    return InMemoryAuditSink()


class AuditTrail:
    """Builds audit records and hands them to the sink."""

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink
        self.failures = 0
        self.logger = logger.bind(component="audit_trail")

    def _append(self, record: AuditRecord) -> None:
        try:
            self.sink.append(record)
        except Exception as e:
            self.failures += 1
            self.logger.error(
                "audit_append_failed",
                error=str(e),
                session_id=record.session_id,
                cause=record.cause,
            )

    def transition(
        self,
        session_id: str,
        from_state: EscalationState,
        to_state: EscalationState,
        cause: str,
    ) -> None:
        self._append(
            AuditRecord(
                session_id=session_id, from_state=from_state, to_state=to_state, cause=cause
            )
        )
        self.logger.info(
            "escalation_transition",
            session_id=session_id,
            from_state=from_state.value,
            to_state=to_state.value,
            cause=cause,
        )

    def component_error(self, component: str, error: BaseException) -> None:
        self._append(AuditRecord(cause=f"{component}_error: {type(error).__name__}: {error}"))

    def flush(self) -> None:
        """Wait for sinks that write in the background. A no-op for the rest."""
        flush = getattr(self.sink, "flush", None)
        if flush is not None:
            flush()

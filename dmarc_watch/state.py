"""Shared state between the ingestion task and its readers.

The scheduler is the only writer and applies one update per cycle. Any number
of readers (aggregation, an HTTP layer, the CLI) query it concurrently. A
single lock guards the whole snapshot so counters and report maps are always
observed together.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Callable, Optional, TypeVar

from .models import MailRecord, ParseFailure, ReportKind, StoredReport
from .store import MergeResult, ParsedPayload, ReportStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PipelineSnapshot:
    """Consistent, read-only copy of the pipeline state."""

    mails: dict[str, MailRecord]
    dmarc_reports: dict[str, StoredReport]
    tls_reports: dict[str, StoredReport]
    parse_failures: list[ParseFailure]
    xml_files: int
    json_files: int
    last_update: Optional[datetime]
    last_error: Optional[str] = None

    @property
    def mails_seen(self) -> int:
        return len(self.mails)

    @property
    def payloads_extracted(self) -> int:
        return self.xml_files + self.json_files

    def reports(self, kind: ReportKind) -> dict[str, StoredReport]:
        return self.dmarc_reports if kind is ReportKind.DMARC else self.tls_reports


@dataclass
class CycleUpdate:
    """Everything a finished cycle wants to merge into the shared state."""

    mails: list[MailRecord] = field(default_factory=list)
    parsed: list[ParsedPayload] = field(default_factory=list)
    error: Optional[str] = None
    finished_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass
class AppliedCycle:
    """Result of merging a cycle: which mails were new and what got stored."""

    new_mails: list[MailRecord]
    merge: MergeResult
    initial: bool


class SharedState:
    """Owner of the mutable pipeline state, guarded by one asyncio lock."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._store = ReportStore()
        self._mails: dict[str, MailRecord] = {}
        self._last_update: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._fetched_once = False

    async def apply_cycle(self, update: CycleUpdate) -> AppliedCycle:
        """Merge one cycle. Only in-memory work happens under the lock."""
        async with self._lock:
            initial = update.error is None and not self._fetched_once
            if update.error is None:
                self._fetched_once = True
            merge = self._store.merge(update.parsed)

            duplicates: dict[str, dict[ReportKind, list[str]]] = {}
            for kind, pairs in merge.duplicates.items():
                for mail_id, digest in pairs:
                    duplicates.setdefault(mail_id, {}).setdefault(kind, []).append(digest)

            new_mails = []
            for mail in update.mails:
                dups = duplicates.get(mail.mail_id, {})
                record = replace(
                    mail,
                    dmarc_duplicates=dups.get(ReportKind.DMARC, []),
                    tls_duplicates=dups.get(ReportKind.TLS, []),
                )
                if record.mail_id not in self._mails:
                    new_mails.append(record)
                self._mails[record.mail_id] = record

            self._last_update = update.finished_at
            self._last_error = update.error

        logger.info(
            "Merged cycle: %s new mail(s), %s new report(s), %s new parse failure(s)",
            len(new_mails),
            merge.added,
            len(merge.new_failures),
        )
        return AppliedCycle(new_mails=new_mails, merge=merge, initial=initial)

    async def snapshot(self) -> PipelineSnapshot:
        async with self._lock:
            return self._snapshot()

    async def read(self, reader: Callable[[PipelineSnapshot], T]) -> T:
        """Run a reader while holding the lock."""
        async with self._lock:
            return reader(self._snapshot())

    def _snapshot(self) -> PipelineSnapshot:
        return PipelineSnapshot(
            mails=dict(self._mails),
            dmarc_reports=dict(self._store.reports[ReportKind.DMARC]),
            tls_reports=dict(self._store.reports[ReportKind.TLS]),
            parse_failures=list(self._store.failures.values()),
            xml_files=self._store.files(ReportKind.DMARC),
            json_files=self._store.files(ReportKind.TLS),
            last_update=self._last_update,
            last_error=self._last_error,
        )

    async def get_report(self, digest: str) -> Optional[StoredReport]:
        async with self._lock:
            return self._store.get(digest)

    async def get_mail(self, mail_id: str) -> Optional[MailRecord]:
        async with self._lock:
            return self._mails.get(mail_id)

    async def get_parse_failures(self, mail_id: str) -> list[ParseFailure]:
        async with self._lock:
            return self._store.failures_for(mail_id)

    async def health(self) -> str:
        """``empty`` before the first cycle, ``degraded`` on bad input or transport errors."""
        async with self._lock:
            if self._last_update is None:
                return "empty"
            if self._store.failures or self._last_error:
                return "degraded"
            return "ok"

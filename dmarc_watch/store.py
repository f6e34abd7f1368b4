"""Content-addressed report store that absorbs repeated downloads."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

from .models import (
    ExtractedPayload,
    ParsedReport,
    ParseFailure,
    ReportKind,
    StoredReport,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedPayload:
    """Outcome of parsing one extracted payload, ready for merging."""

    payload: ExtractedPayload
    outcome: Union[ParsedReport, ParseFailure]


@dataclass
class MergeResult:
    """What one merge changed, per report kind."""

    new_reports: dict[ReportKind, list[str]] = field(
        default_factory=lambda: {kind: [] for kind in ReportKind}
    )
    duplicates: dict[ReportKind, list[tuple[str, str]]] = field(
        default_factory=lambda: {kind: [] for kind in ReportKind}
    )
    new_failures: list[str] = field(default_factory=list)

    @property
    def added(self) -> int:
        return sum(len(digests) for digests in self.new_reports.values())


class ReportStore:
    """Store parsed reports keyed by the digest of their raw payload.

    The first mail that delivers a payload owns the stored entry. Later
    deliveries of byte-identical content are recorded as duplicates and leave
    the entry untouched.
    """

    def __init__(self) -> None:
        self.reports: dict[ReportKind, dict[str, StoredReport]] = {kind: {} for kind in ReportKind}
        self.failures: dict[str, ParseFailure] = {}
        self.mail_failures: dict[str, dict[str, ParseFailure]] = {}
        self.payload_digests: dict[ReportKind, set[str]] = {kind: set() for kind in ReportKind}

    def get(self, digest: str) -> Optional[StoredReport]:
        for reports in self.reports.values():
            if digest in reports:
                return reports[digest]
        return None

    def record(self, payload: ExtractedPayload, report: ParsedReport) -> bool:
        """Insert a parsed report unless its digest is already stored."""
        self.payload_digests[payload.kind].add(payload.digest)
        reports = self.reports[report.kind]
        if payload.digest in reports:
            return False
        reports[payload.digest] = StoredReport(
            digest=payload.digest,
            mail_id=payload.mail_id,
            mail_uid=payload.mail_uid,
            report=report,
        )
        return True

    def record_failure(self, payload: ExtractedPayload, failure: ParseFailure) -> bool:
        """Keep a parse failure once per payload digest.

        Every mail that carried the payload still gets the failure attached,
        so per-mail lookups agree with the mail's error counters.
        """
        self.payload_digests[payload.kind].add(payload.digest)
        self.mail_failures.setdefault(payload.mail_id, {})[payload.digest] = failure
        if payload.digest in self.failures:
            return False
        self.failures[payload.digest] = failure
        return True

    def merge(self, parsed: Iterable[ParsedPayload]) -> MergeResult:
        """Absorb one cycle's parse outcomes."""
        result = MergeResult()
        for item in parsed:
            payload, outcome = item.payload, item.outcome
            if isinstance(outcome, ParseFailure):
                if self.record_failure(payload, outcome):
                    result.new_failures.append(payload.digest)
                continue
            if self.record(payload, outcome):
                result.new_reports[outcome.kind].append(payload.digest)
                continue
            owner = self.reports[outcome.kind][payload.digest].mail_id
            if owner != payload.mail_id:
                logger.debug(
                    "Report %s from mail %s duplicates the one stored from mail %s",
                    payload.digest,
                    payload.mail_id,
                    owner,
                )
                result.duplicates[outcome.kind].append((payload.mail_id, payload.digest))
        return result

    def files(self, kind: ReportKind) -> int:
        return len(self.payload_digests[kind])

    def failures_for(self, mail_id: str) -> list[ParseFailure]:
        return list(self.mail_failures.get(mail_id, {}).values())

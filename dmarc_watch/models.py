"""Typed containers shared across the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class ReportKind(str, Enum):
    """Tag for the two report variants carried by mails."""

    DMARC = "dmarc"
    TLS = "tls"


@dataclass
class RawMessage:
    """A mail as delivered by the transport, owned by a single cycle."""

    uid: int
    account: str
    folder: str
    size: int
    body: Optional[bytes]
    oversized: bool = False


@dataclass
class MailRecord:
    """Lightweight metadata retained after the raw body is discarded."""

    mail_id: str
    uid: int
    account: str
    folder: str
    size: int
    oversized: bool
    date: Optional[datetime] = None
    subject: str = ""
    sender: str = ""
    to: str = ""
    xml_files: int = 0
    json_files: int = 0
    xml_parsing_errors: int = 0
    json_parsing_errors: int = 0
    dmarc_duplicates: list[str] = field(default_factory=list)
    tls_duplicates: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExtractedPayload:
    """One decompressed report document found in a mail."""

    mail_id: str
    mail_uid: int
    kind: ReportKind
    data: bytes
    digest: str
    filename: Optional[str] = None


# DMARC aggregate report (RFC 7489 appendix C)


@dataclass(frozen=True)
class PolicyPublished:
    domain: str
    p: str
    adkim: Optional[str] = None
    aspf: Optional[str] = None
    sp: Optional[str] = None
    pct: Optional[int] = None
    fo: Optional[str] = None


@dataclass(frozen=True)
class PolicyOverrideReason:
    kind: str
    comment: Optional[str] = None


@dataclass(frozen=True)
class PolicyEvaluated:
    disposition: str
    dkim: Optional[str] = None
    spf: Optional[str] = None
    reasons: tuple[PolicyOverrideReason, ...] = ()


@dataclass(frozen=True)
class DkimAuthResult:
    domain: str
    result: str
    selector: Optional[str] = None
    human_result: Optional[str] = None


@dataclass(frozen=True)
class SpfAuthResult:
    domain: str
    result: str
    scope: Optional[str] = None


@dataclass(frozen=True)
class DmarcRecord:
    source_ip: str
    count: int
    policy_evaluated: PolicyEvaluated
    header_from: str
    envelope_from: Optional[str] = None
    envelope_to: Optional[str] = None
    dkim_results: tuple[DkimAuthResult, ...] = ()
    spf_results: tuple[SpfAuthResult, ...] = ()


@dataclass(frozen=True)
class DmarcReport:
    """Aggregate compliance report."""

    org_name: str
    email: str
    report_id: str
    begin: int
    end: int
    policy_published: PolicyPublished
    records: tuple[DmarcRecord, ...]
    extra_contact_info: Optional[str] = None
    errors: tuple[str, ...] = ()
    version: Optional[str] = None

    kind = ReportKind.DMARC


# SMTP TLS report (RFC 8460)


@dataclass(frozen=True)
class TlsPolicy:
    policy_type: str
    policy_domain: str
    policy_strings: tuple[str, ...] = ()
    mx_hosts: tuple[str, ...] = ()


@dataclass(frozen=True)
class TlsFailureDetails:
    result_type: str
    failed_session_count: int
    sending_mta_ip: Optional[str] = None
    receiving_mx_hostname: Optional[str] = None
    receiving_mx_helo: Optional[str] = None
    receiving_ip: Optional[str] = None
    additional_information: Optional[str] = None
    failure_reason_code: Optional[str] = None


@dataclass(frozen=True)
class TlsPolicyResult:
    policy: TlsPolicy
    successful_session_count: int
    failure_session_count: int
    failure_details: tuple[TlsFailureDetails, ...] = ()


@dataclass(frozen=True)
class TlsReport:
    """Transport security report."""

    organization_name: str
    contact_info: str
    report_id: str
    start: datetime
    end: datetime
    policies: tuple[TlsPolicyResult, ...]

    kind = ReportKind.TLS


ParsedReport = Union[DmarcReport, TlsReport]


@dataclass(frozen=True)
class StoredReport:
    """A parsed report keyed by the digest of its raw payload."""

    digest: str
    mail_id: str
    mail_uid: int
    report: ParsedReport

    @property
    def kind(self) -> ReportKind:
        return self.report.kind


@dataclass(frozen=True)
class ParseFailure:
    """A payload that could not be parsed, kept for operator inspection."""

    mail_id: str
    mail_uid: int
    kind: ReportKind
    digest: str
    error: str
    payload: str

"""Summaries and filtered views over a pipeline snapshot.

Everything here is a pure function of a :class:`PipelineSnapshot`, filter
values and a reference time, so callers can run it on any copy of the state.
"""

from __future__ import annotations

import ipaddress
from collections import Counter
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime, timedelta
from typing import Any, Iterable, Optional

from .models import DmarcReport, StoredReport, TlsReport
from .state import PipelineSnapshot

PASS = "pass"


@dataclass(frozen=True)
class ReportFilters:
    """Optional filters, combined with logical AND. None disables a filter."""

    time_span_hours: Optional[int] = None
    domain: Optional[str] = None
    org: Optional[str] = None
    mail_id: Optional[str] = None
    ip: Optional[str] = None
    flagged: Optional[bool] = None
    flagged_dkim: Optional[bool] = None
    flagged_spf: Optional[bool] = None
    flagged_dmarc: Optional[bool] = None
    flagged_sts: Optional[bool] = None
    flagged_tlsa: Optional[bool] = None


@dataclass(frozen=True)
class DmarcFlags:
    dkim: bool
    spf: bool
    dmarc: bool

    @property
    def any(self) -> bool:
        return self.dkim or self.spf or self.dmarc


@dataclass(frozen=True)
class TlsFlags:
    sts: bool
    tlsa: bool

    @property
    def any(self) -> bool:
        return self.sts or self.tlsa


def dmarc_flags(report: DmarcReport) -> DmarcFlags:
    """Flag DKIM/SPF issues from policy evaluation or raw auth results."""
    dkim = spf = dmarc = False
    for record in report.records:
        evaluated = record.policy_evaluated
        if evaluated.dkim is not None and evaluated.dkim != PASS:
            dkim = True
        if evaluated.spf is not None and evaluated.spf != PASS:
            spf = True
        if evaluated.dkim != PASS and evaluated.spf != PASS:
            dmarc = True
        if any(result.result != PASS for result in record.dkim_results):
            dkim = True
        if any(result.result != PASS for result in record.spf_results):
            spf = True
    return DmarcFlags(dkim=dkim, spf=spf, dmarc=dmarc)


def tls_flags(report: TlsReport) -> TlsFlags:
    """Flag policy types that saw failed sessions."""
    sts = tlsa = False
    for result in report.policies:
        if result.failure_session_count > 0:
            if result.policy.policy_type == "sts":
                sts = True
            elif result.policy.policy_type == "tlsa":
                tlsa = True
    return TlsFlags(sts=sts, tlsa=tlsa)


def _threshold(filters: ReportFilters, now: datetime) -> Optional[datetime]:
    if not filters.time_span_hours:
        return None
    return now - timedelta(hours=filters.time_span_hours)


def _normalize_ip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return value.strip()


def _match(expected: Optional[bool], actual: bool) -> bool:
    return expected is None or expected == actual


def dmarc_matches(
    stored: StoredReport, filters: ReportFilters, now: Optional[datetime] = None
) -> bool:
    report = stored.report
    if not isinstance(report, DmarcReport):
        return False
    threshold = _threshold(filters, now or datetime.now(tz=UTC))
    if threshold is not None and report.end < threshold.timestamp():
        return False
    if filters.domain is not None and report.policy_published.domain != filters.domain.lower():
        return False
    if filters.org is not None and report.org_name != filters.org:
        return False
    if filters.mail_id is not None and stored.mail_id != filters.mail_id:
        return False
    ip = _normalize_ip(filters.ip)
    if ip is not None and not any(record.source_ip == ip for record in report.records):
        return False
    flags = dmarc_flags(report)
    return (
        _match(filters.flagged, flags.any)
        and _match(filters.flagged_dkim, flags.dkim)
        and _match(filters.flagged_spf, flags.spf)
        and _match(filters.flagged_dmarc, flags.dmarc)
    )


def tls_matches(
    stored: StoredReport, filters: ReportFilters, now: Optional[datetime] = None
) -> bool:
    report = stored.report
    if not isinstance(report, TlsReport):
        return False
    threshold = _threshold(filters, now or datetime.now(tz=UTC))
    if threshold is not None and report.end < threshold:
        return False
    if filters.domain is not None and all(
        result.policy.policy_domain != filters.domain.lower() for result in report.policies
    ):
        return False
    if filters.org is not None and report.organization_name != filters.org:
        return False
    if filters.mail_id is not None and stored.mail_id != filters.mail_id:
        return False
    ip = _normalize_ip(filters.ip)
    if ip is not None and not any(
        _normalize_ip(detail.sending_mta_ip) == ip
        for result in report.policies
        for detail in result.failure_details
    ):
        return False
    flags = tls_flags(report)
    return (
        _match(filters.flagged, flags.any)
        and _match(filters.flagged_sts, flags.sts)
        and _match(filters.flagged_tlsa, flags.tlsa)
    )


def filter_dmarc_reports(
    snapshot: PipelineSnapshot, filters: ReportFilters, now: Optional[datetime] = None
) -> list[StoredReport]:
    now = now or datetime.now(tz=UTC)
    return [
        stored for stored in snapshot.dmarc_reports.values() if dmarc_matches(stored, filters, now)
    ]


def filter_tls_reports(
    snapshot: PipelineSnapshot, filters: ReportFilters, now: Optional[datetime] = None
) -> list[StoredReport]:
    now = now or datetime.now(tz=UTC)
    return [
        stored for stored in snapshot.tls_reports.values() if tls_matches(stored, filters, now)
    ]


@dataclass
class DmarcSummary:
    files: int = 0
    reports: int = 0
    orgs: Counter = field(default_factory=Counter)
    domains: Counter = field(default_factory=Counter)
    spf_policy_results: Counter = field(default_factory=Counter)
    dkim_policy_results: Counter = field(default_factory=Counter)
    spf_auth_results: Counter = field(default_factory=Counter)
    dkim_auth_results: Counter = field(default_factory=Counter)


@dataclass
class TlsSummary:
    files: int = 0
    reports: int = 0
    orgs: Counter = field(default_factory=Counter)
    domains: Counter = field(default_factory=Counter)
    policy_types: Counter = field(default_factory=Counter)
    sts_policy_results: Counter = field(default_factory=Counter)
    tlsa_policy_results: Counter = field(default_factory=Counter)
    sts_failure_types: Counter = field(default_factory=Counter)
    tlsa_failure_types: Counter = field(default_factory=Counter)


@dataclass
class Summary:
    mails: int
    last_update: Optional[datetime]
    dmarc: DmarcSummary
    tls: TlsSummary
    parse_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mails": self.mails,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "parse_failures": self.parse_failures,
            "dmarc": _section_dict(self.dmarc),
            "tls": _section_dict(self.tls),
        }


def _section_dict(section) -> dict[str, Any]:
    data = {}
    for item in fields(section):
        value = getattr(section, item.name)
        data[item.name] = dict(value) if isinstance(value, Counter) else value
    return data


def _summarize_dmarc(reports: Iterable[StoredReport], summary: DmarcSummary) -> None:
    for stored in reports:
        report = stored.report
        summary.reports += 1
        summary.orgs[report.org_name] += 1
        summary.domains[report.policy_published.domain] += 1
        for record in report.records:
            evaluated = record.policy_evaluated
            if evaluated.spf is not None:
                summary.spf_policy_results[evaluated.spf] += record.count
            if evaluated.dkim is not None:
                summary.dkim_policy_results[evaluated.dkim] += record.count
            for result in record.spf_results:
                summary.spf_auth_results[result.result] += record.count
            for result in record.dkim_results:
                summary.dkim_auth_results[result.result] += record.count


def _summarize_tls(reports: Iterable[StoredReport], summary: TlsSummary) -> None:
    for stored in reports:
        report = stored.report
        summary.reports += 1
        summary.orgs[report.organization_name] += 1
        for result in report.policies:
            policy_type = result.policy.policy_type
            summary.domains[result.policy.policy_domain] += 1
            summary.policy_types[policy_type] += 1
            if policy_type == "sts":
                results, failures = summary.sts_policy_results, summary.sts_failure_types
            elif policy_type == "tlsa":
                results, failures = summary.tlsa_policy_results, summary.tlsa_failure_types
            else:
                continue
            results["successful"] += result.successful_session_count
            results["failure"] += result.failure_session_count
            for detail in result.failure_details:
                failures[detail.result_type] += detail.failed_session_count


def summarize(
    snapshot: PipelineSnapshot,
    filters: Optional[ReportFilters] = None,
    now: Optional[datetime] = None,
) -> Summary:
    """Report counts per organization/domain and outcome counts, weighted by message count."""
    filters = filters or ReportFilters()
    now = now or datetime.now(tz=UTC)
    dmarc = DmarcSummary(files=snapshot.xml_files)
    tls = TlsSummary(files=snapshot.json_files)
    _summarize_dmarc(filter_dmarc_reports(snapshot, filters, now), dmarc)
    _summarize_tls(filter_tls_reports(snapshot, filters, now), tls)
    return Summary(
        mails=snapshot.mails_seen,
        last_update=snapshot.last_update,
        dmarc=dmarc,
        tls=tls,
        parse_failures=len(snapshot.parse_failures),
    )


def dmarc_report_headers(
    snapshot: PipelineSnapshot,
    filters: Optional[ReportFilters] = None,
    now: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    """List rows for DMARC reports, newest first."""
    rows = []
    for stored in filter_dmarc_reports(snapshot, filters or ReportFilters(), now):
        report = stored.report
        flags = dmarc_flags(report)
        rows.append(
            {
                "hash": stored.digest,
                "mail_id": stored.mail_id,
                "id": report.report_id,
                "org": report.org_name,
                "domain": report.policy_published.domain,
                "date_begin": report.begin,
                "date_end": report.end,
                "records": len(report.records),
                "flagged": flags.any,
                "flagged_dkim": flags.dkim,
                "flagged_spf": flags.spf,
                "flagged_dmarc": flags.dmarc,
            }
        )
    rows.sort(key=lambda row: row["date_end"], reverse=True)
    return rows


def tls_report_headers(
    snapshot: PipelineSnapshot,
    filters: Optional[ReportFilters] = None,
    now: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    """List rows for SMTP TLS reports, newest first."""
    rows = []
    for stored in filter_tls_reports(snapshot, filters or ReportFilters(), now):
        report = stored.report
        flags = tls_flags(report)
        rows.append(
            {
                "hash": stored.digest,
                "mail_id": stored.mail_id,
                "id": report.report_id,
                "org": report.organization_name,
                "domains": sorted({result.policy.policy_domain for result in report.policies}),
                "date_begin": report.start,
                "date_end": report.end,
                "records": len(report.policies),
                "flagged": flags.any,
                "flagged_sts": flags.sts,
                "flagged_tlsa": flags.tlsa,
            }
        )
    rows.sort(key=lambda row: row["date_end"], reverse=True)
    return rows


def dmarc_sources(
    snapshot: PipelineSnapshot,
    filters: Optional[ReportFilters] = None,
    now: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    """Roll up DMARC records per source IP, largest senders first."""
    sources: dict[str, dict[str, Any]] = {}
    for stored in filter_dmarc_reports(snapshot, filters or ReportFilters(), now):
        report = stored.report
        for record in report.records:
            source = sources.setdefault(
                record.source_ip,
                {
                    "ip": record.source_ip,
                    "count": 0,
                    "domain": report.policy_published.domain,
                    "issues": set(),
                },
            )
            source["count"] += record.count
            evaluated = record.policy_evaluated
            if evaluated.spf is not None and evaluated.spf != PASS:
                source["issues"].add("spf_policy")
            if evaluated.dkim is not None and evaluated.dkim != PASS:
                source["issues"].add("dkim_policy")
            if any(result.result != PASS for result in record.spf_results):
                source["issues"].add("spf_auth")
            if any(result.result != PASS for result in record.dkim_results):
                source["issues"].add("dkim_auth")
    rows = sorted(sources.values(), key=lambda source: source["count"], reverse=True)
    for row in rows:
        row["issues"] = sorted(row["issues"])
    return rows


def tls_sources(
    snapshot: PipelineSnapshot,
    filters: Optional[ReportFilters] = None,
    now: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    """Roll up TLS failure details per sending MTA IP."""
    sources: dict[str, dict[str, Any]] = {}
    for stored in filter_tls_reports(snapshot, filters or ReportFilters(), now):
        for result in stored.report.policies:
            for detail in result.failure_details:
                if not detail.sending_mta_ip:
                    continue
                ip = _normalize_ip(detail.sending_mta_ip)
                source = sources.setdefault(
                    ip,
                    {"ip": ip, "failed_sessions": 0, "domains": set(), "result_types": Counter()},
                )
                source["failed_sessions"] += detail.failed_session_count
                source["domains"].add(result.policy.policy_domain)
                source["result_types"][detail.result_type] += detail.failed_session_count
    rows = sorted(sources.values(), key=lambda source: source["failed_sessions"], reverse=True)
    for row in rows:
        row["domains"] = sorted(row["domains"])
        row["result_types"] = dict(row["result_types"])
    return rows

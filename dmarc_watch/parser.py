"""Parse DMARC aggregate (XML) and SMTP TLS (JSON) reports.

Parsing is strict about required fields and enumerated values but ignores
elements it does not know, so newer schema revisions keep parsing.
"""

from __future__ import annotations

import ipaddress
import json
import logging
from typing import Any, Optional, Union

import xmltodict
from xml.parsers.expat import ExpatError

from .models import (
    DkimAuthResult,
    DmarcRecord,
    DmarcReport,
    ExtractedPayload,
    ParsedReport,
    ParseFailure,
    PolicyEvaluated,
    PolicyOverrideReason,
    PolicyPublished,
    ReportKind,
    SpfAuthResult,
    TlsFailureDetails,
    TlsPolicy,
    TlsPolicyResult,
    TlsReport,
)
from .utils import parse_rfc3339

logger = logging.getLogger(__name__)

ALIGNMENT_MODES = {"r", "s"}
DISPOSITIONS = {"none", "quarantine", "reject"}
DMARC_RESULTS = {"pass", "fail"}
DKIM_RESULTS = {"none", "pass", "fail", "policy", "neutral", "temperror", "permerror"}
SPF_RESULTS = {"none", "neutral", "pass", "fail", "softfail", "temperror", "permerror"}
SPF_ALIASES = {"hardfail": "fail"}
SPF_SCOPES = {"helo", "mfrom"}
OVERRIDE_TYPES = {
    "forwarded",
    "sampled_out",
    "trusted_forwarder",
    "mailing_list",
    "local_policy",
    "other",
}
TLS_POLICY_TYPES = {"sts", "tlsa", "no-policy-found"}


class ReportParseError(ValueError):
    """Base class for payloads that do not match their report schema."""


class InvalidDmarcReport(ReportParseError):
    """Raised when an XML payload is not a valid DMARC aggregate report"""


class InvalidTlsReport(ReportParseError):
    """Raised when a JSON payload is not a valid SMTP TLS report"""


def _as_list(value: Any) -> list:
    """xmltodict returns a dict for a single child and a list for many."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _text(value: Any) -> Optional[str]:
    """Return the text content of an xmltodict node, or None if empty."""
    if isinstance(value, dict):
        value = value.get("#text")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _required(node: Any, key: str, path: str) -> Any:
    if not isinstance(node, dict) or key not in node:
        raise InvalidDmarcReport(f"Missing field: {path}.{key}")
    return node[key]


def _required_text(node: Any, key: str, path: str) -> str:
    value = _text(_required(node, key, path))
    if value is None:
        raise InvalidDmarcReport(f"Empty field: {path}.{key}")
    return value


def _required_str(node: Any, key: str, path: str) -> str:
    """Like _required_text, but an empty element is accepted as ''."""
    return _text(_required(node, key, path)) or ""


def _enum(value: Optional[str], allowed: set[str], field: str) -> Optional[str]:
    if value is None:
        return None
    lowered = value.lower()
    if lowered not in allowed:
        raise InvalidDmarcReport(f"'{value}' is not a known value for {field}")
    return lowered


def _int(value: Optional[str], field: str) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise InvalidDmarcReport(f"Field {field} is not an integer: {value!r}") from exc


def _disposition(node: Any, key: str, path: str, required: bool = False) -> Optional[str]:
    if required:
        _required(node, key, path)
    elif not isinstance(node, dict) or key not in node:
        return None
    # Some reporters send an empty value instead of "none".
    value = _text(node[key]) or "none"
    return _enum(value, DISPOSITIONS, f"{path}.{key}")


def _parse_policy_published(node: Any) -> PolicyPublished:
    if isinstance(node, list):
        node = node[0]
    path = "policy_published"
    pct = _text(node.get("pct")) if isinstance(node, dict) else None
    return PolicyPublished(
        domain=_required_text(node, "domain", path).lower(),
        adkim=_enum(_text(node.get("adkim")), ALIGNMENT_MODES, f"{path}.adkim"),
        aspf=_enum(_text(node.get("aspf")), ALIGNMENT_MODES, f"{path}.aspf"),
        p=_disposition(node, "p", path, required=True),
        sp=_disposition(node, "sp", path),
        pct=_int(pct, f"{path}.pct") if pct is not None else None,
        fo=_text(node.get("fo")),
    )


def _parse_record(record: Any) -> DmarcRecord:
    row = _required(record, "row", "record")
    source_ip = _required_text(row, "source_ip", "record.row")
    try:
        source_ip = str(ipaddress.ip_address(source_ip))
    except ValueError as exc:
        raise InvalidDmarcReport(f"Invalid source IP address: {source_ip}") from exc

    evaluated = _required(row, "policy_evaluated", "record.row")
    path = "record.row.policy_evaluated"
    reasons = []
    for reason in _as_list(evaluated.get("reason") if isinstance(evaluated, dict) else None):
        kind = _enum(
            _text(_required(reason, "type", f"{path}.reason")),
            OVERRIDE_TYPES,
            f"{path}.reason.type",
        )
        reasons.append(PolicyOverrideReason(kind=kind, comment=_text(reason.get("comment"))))
    policy_evaluated = PolicyEvaluated(
        disposition=_disposition(evaluated, "disposition", path, required=True),
        dkim=_enum(_text(evaluated.get("dkim")), DMARC_RESULTS, f"{path}.dkim"),
        spf=_enum(_text(evaluated.get("spf")), DMARC_RESULTS, f"{path}.spf"),
        reasons=tuple(reasons),
    )

    # Older reports used "identities" instead of "identifiers".
    identifiers = record.get("identifiers") or record.get("identities")
    if identifiers is None:
        raise InvalidDmarcReport("Missing field: record.identifiers")

    auth_results = _required(record, "auth_results", "record") or {}
    dkim_results = []
    for result in _as_list(auth_results.get("dkim")):
        dkim_results.append(
            DkimAuthResult(
                domain=_required_str(result, "domain", "auth_results.dkim"),
                result=_enum(
                    _required_text(result, "result", "auth_results.dkim"),
                    DKIM_RESULTS,
                    "auth_results.dkim.result",
                ),
                selector=_text(result.get("selector")),
                human_result=_text(result.get("human_result")),
            )
        )
    spf_results = []
    for result in _as_list(auth_results.get("spf")):
        raw = _required_text(result, "result", "auth_results.spf").lower()
        spf_results.append(
            SpfAuthResult(
                domain=_required_str(result, "domain", "auth_results.spf"),
                result=_enum(SPF_ALIASES.get(raw, raw), SPF_RESULTS, "auth_results.spf.result"),
                scope=_enum(_text(result.get("scope")), SPF_SCOPES, "auth_results.spf.scope"),
            )
        )

    return DmarcRecord(
        source_ip=source_ip,
        count=_int(_required_text(row, "count", "record.row"), "record.row.count"),
        policy_evaluated=policy_evaluated,
        header_from=_required_str(identifiers, "header_from", "record.identifiers"),
        envelope_from=_text(identifiers.get("envelope_from")),
        envelope_to=_text(identifiers.get("envelope_to")),
        dkim_results=tuple(dkim_results),
        spf_results=tuple(spf_results),
    )


def parse_dmarc_report(xml: Union[bytes, str]) -> DmarcReport:
    """Parse a DMARC aggregate report XML document."""
    try:
        document = xmltodict.parse(xml)
    except ExpatError as exc:
        raise InvalidDmarcReport(f"Invalid XML: {exc}") from exc

    if not isinstance(document, dict) or not isinstance(document.get("feedback"), dict):
        raise InvalidDmarcReport("Missing root element: feedback")
    try:
        return _build_dmarc_report(document["feedback"])
    except (AttributeError, TypeError) as exc:
        raise InvalidDmarcReport(f"Report has a malformed section: {exc}") from exc


def _build_dmarc_report(feedback: dict[str, Any]) -> DmarcReport:
    metadata = _required(feedback, "report_metadata", "feedback")
    date_range = _required(metadata, "date_range", "report_metadata")
    path = "report_metadata"
    records = _as_list(_required(feedback, "record", "feedback"))
    if not records:
        raise InvalidDmarcReport("Report contains no records")

    return DmarcReport(
        org_name=_required_text(metadata, "org_name", path),
        email=_required_text(metadata, "email", path),
        report_id=_required_text(metadata, "report_id", path),
        begin=_int(_required_text(date_range, "begin", f"{path}.date_range"), "date_range.begin"),
        end=_int(_required_text(date_range, "end", f"{path}.date_range"), "date_range.end"),
        policy_published=_parse_policy_published(_required(feedback, "policy_published", "feedback")),
        records=tuple(_parse_record(record) for record in records),
        extra_contact_info=_text(metadata.get("extra_contact_info")),
        errors=tuple(
            text for text in (_text(error) for error in _as_list(metadata.get("error"))) if text
        ),
        version=_text(feedback.get("version")),
    )


def _tls_required(node: Any, key: str, path: str) -> Any:
    if not isinstance(node, dict) or key not in node or node[key] is None:
        raise InvalidTlsReport(f"Missing required field: {path}{key}")
    return node[key]


def _tls_count(node: Any, key: str, path: str) -> int:
    value = _tls_required(node, key, path)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidTlsReport(f"Field {path}{key} must be a non-negative integer")
    return value


def _tls_strings(value: Any, field: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise InvalidTlsReport(f"Field {field} must be a list")
    return tuple(str(item) for item in value)


def _parse_failure_details(details: Any) -> TlsFailureDetails:
    path = "failure-details."
    return TlsFailureDetails(
        result_type=str(_tls_required(details, "result-type", path)),
        failed_session_count=_tls_count(details, "failed-session-count", path),
        sending_mta_ip=details.get("sending-mta-ip"),
        receiving_mx_hostname=details.get("receiving-mx-hostname"),
        receiving_mx_helo=details.get("receiving-mx-helo"),
        receiving_ip=details.get("receiving-ip"),
        additional_information=details.get("additional-information"),
        failure_reason_code=details.get("failure-reason-code"),
    )


def _parse_policy_result(entry: Any) -> TlsPolicyResult:
    policy = _tls_required(entry, "policy", "policies.")
    policy_type = str(_tls_required(policy, "policy-type", "policy.")).lower()
    if policy_type not in TLS_POLICY_TYPES:
        raise InvalidTlsReport(f"Invalid policy type {policy_type}")
    summary = _tls_required(entry, "summary", "policies.")
    details = entry.get("failure-details") or []
    if not isinstance(details, list):
        raise InvalidTlsReport("failure-details must be a list")
    return TlsPolicyResult(
        policy=TlsPolicy(
            policy_type=policy_type,
            policy_domain=str(_tls_required(policy, "policy-domain", "policy.")).lower(),
            policy_strings=_tls_strings(policy.get("policy-string"), "policy-string"),
            mx_hosts=_tls_strings(policy.get("mx-host"), "mx-host"),
        ),
        successful_session_count=_tls_count(summary, "total-successful-session-count", "summary."),
        failure_session_count=_tls_count(summary, "total-failure-session-count", "summary."),
        failure_details=tuple(_parse_failure_details(detail) for detail in details),
    )


def parse_tls_report(document: Union[bytes, str]) -> TlsReport:
    """Parse an SMTP TLS report JSON document."""
    try:
        report = json.loads(document)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidTlsReport(f"Invalid JSON: {exc}") from exc
    except RecursionError as exc:
        raise InvalidTlsReport("JSON is nested too deeply") from exc
    if not isinstance(report, dict):
        raise InvalidTlsReport("Report must be a JSON object")
    try:
        return _build_tls_report(report)
    except (AttributeError, TypeError) as exc:
        raise InvalidTlsReport(f"Report has a malformed section: {exc}") from exc


def _build_tls_report(report: dict[str, Any]) -> TlsReport:
    date_range = _tls_required(report, "date-range", "")
    raw_start = str(_tls_required(date_range, "start-datetime", "date-range."))
    raw_end = str(_tls_required(date_range, "end-datetime", "date-range."))
    try:
        start = parse_rfc3339(raw_start)
        end = parse_rfc3339(raw_end)
    except ValueError as exc:
        raise InvalidTlsReport(f"Invalid date range: {exc}") from exc

    policies = _tls_required(report, "policies", "")
    if not isinstance(policies, list):
        raise InvalidTlsReport(f"policies must be a list, not {type(policies).__name__}")

    return TlsReport(
        organization_name=str(_tls_required(report, "organization-name", "")),
        contact_info=str(_tls_required(report, "contact-info", "")),
        report_id=str(_tls_required(report, "report-id", "")),
        start=start,
        end=end,
        policies=tuple(_parse_policy_result(policy) for policy in policies),
    )


def parse_report(data: bytes, kind: ReportKind) -> ParsedReport:
    """Dispatch on the declared report kind."""
    if kind is ReportKind.DMARC:
        return parse_dmarc_report(data)
    return parse_tls_report(data)


def parse_payload(payload: ExtractedPayload) -> Union[ParsedReport, ParseFailure]:
    """Parse one extracted payload, turning schema errors into a ParseFailure."""
    try:
        return parse_report(payload.data, payload.kind)
    except ReportParseError as exc:
        logger.warning(
            "Failed to parse %s report %s from mail with UID %s: %s",
            payload.kind.value,
            payload.digest,
            payload.mail_uid,
            exc,
        )
        return ParseFailure(
            mail_id=payload.mail_id,
            mail_uid=payload.mail_uid,
            kind=payload.kind,
            digest=payload.digest,
            error=str(exc),
            payload=payload.data.decode("utf-8", errors="replace"),
        )

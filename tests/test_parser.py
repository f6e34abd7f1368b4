"""
Tests for the DMARC and SMTP TLS report parsers.
"""

import json
from datetime import UTC, datetime

import pytest

from conftest import TLS_REPORT, dmarc_xml, tls_json

from dmarc_watch.models import DmarcReport, ExtractedPayload, ParseFailure, ReportKind, TlsReport
from dmarc_watch.parser import (
    InvalidDmarcReport,
    InvalidTlsReport,
    ReportParseError,
    parse_dmarc_report,
    parse_payload,
    parse_tls_report,
)
from dmarc_watch.utils import content_digest


class TestParseDmarcReport:
    def test_parses_report(self):
        report = parse_dmarc_report(dmarc_xml())

        assert isinstance(report, DmarcReport)
        assert report.kind is ReportKind.DMARC
        assert report.org_name == "google.com"
        assert report.report_id == "report-1"
        assert report.begin == 1700000000
        assert report.version == "1.0"
        assert report.policy_published.domain == "example.com"
        assert report.policy_published.pct == 100
        assert len(report.records) == 1

        record = report.records[0]
        assert record.source_ip == "192.0.2.10"
        assert record.count == 3
        assert record.policy_evaluated.disposition == "none"
        assert record.header_from == "example.com"
        assert record.dkim_results[0].selector == "s1"
        assert record.spf_results[0].result == "pass"

    def test_hardfail_is_accepted_as_fail(self):
        report = parse_dmarc_report(dmarc_xml(spf_auth="hardfail"))
        assert report.records[0].spf_results[0].result == "fail"

    def test_empty_subdomain_policy_means_none(self):
        report = parse_dmarc_report(dmarc_xml(sp=""))
        assert report.policy_published.sp == "none"

    def test_unknown_elements_are_ignored(self):
        xml = dmarc_xml().replace(b"<version>1.0</version>", b"<vendor_extension>x</vendor_extension>")
        assert parse_dmarc_report(xml).version is None

    def test_identities_alias(self):
        xml = dmarc_xml().replace(b"identifiers>", b"identities>")
        assert parse_dmarc_report(xml).records[0].header_from == "example.com"

    def test_missing_required_field(self):
        xml = dmarc_xml().replace(b"<org_name>google.com</org_name>", b"")
        with pytest.raises(InvalidDmarcReport, match="org_name"):
            parse_dmarc_report(xml)

    def test_unknown_enum_value(self):
        with pytest.raises(InvalidDmarcReport):
            parse_dmarc_report(dmarc_xml(dkim="maybe"))

    def test_invalid_source_ip(self):
        xml = dmarc_xml().replace(b"192.0.2.10", b"not-an-ip")
        with pytest.raises(InvalidDmarcReport, match="source IP"):
            parse_dmarc_report(xml)

    def test_invalid_xml(self):
        with pytest.raises(ReportParseError):
            parse_dmarc_report(b"<feedback><unclosed></feedback>")

    def test_wrong_root(self):
        with pytest.raises(InvalidDmarcReport):
            parse_dmarc_report(b"<html><body/></html>")


class TestParseTlsReport:
    def test_parses_rfc_example(self):
        report = parse_tls_report(tls_json())

        assert isinstance(report, TlsReport)
        assert report.organization_name == "Company-X"
        assert report.start == datetime(2016, 4, 1, tzinfo=UTC)
        assert report.end == datetime(2016, 4, 1, 23, 59, 59, tzinfo=UTC)
        assert len(report.policies) == 1

        result = report.policies[0]
        assert result.policy.policy_type == "sts"
        assert result.policy.policy_domain == "company-y.example"
        assert result.successful_session_count == 5326
        assert result.failure_session_count == 303
        assert len(result.failure_details) == 3
        assert result.failure_details[2].failure_reason_code == "X509_V_ERR_PROXY_PATH_LENGTH_EXCEEDED"

    def test_missing_date_range(self):
        report = dict(TLS_REPORT)
        del report["date-range"]
        with pytest.raises(InvalidTlsReport, match="date-range"):
            parse_tls_report(json.dumps(report))

    def test_invalid_policy_type(self):
        policies = json.loads(json.dumps(TLS_REPORT["policies"]))
        policies[0]["policy"]["policy-type"] = "dane"
        with pytest.raises(InvalidTlsReport, match="policy type"):
            parse_tls_report(tls_json(policies=policies))

    def test_negative_count(self):
        policies = json.loads(json.dumps(TLS_REPORT["policies"]))
        policies[0]["summary"]["total-failure-session-count"] = -1
        with pytest.raises(InvalidTlsReport):
            parse_tls_report(tls_json(policies=policies))

    def test_invalid_json(self):
        with pytest.raises(InvalidTlsReport):
            parse_tls_report(b"{not json")

    def test_deeply_nested_json(self):
        document = b'{"a":' + b"[" * 200000 + b"]" * 200000 + b"}"
        with pytest.raises(InvalidTlsReport, match="nested too deeply"):
            parse_tls_report(document)

    def test_wrong_section_type(self):
        with pytest.raises(InvalidTlsReport):
            parse_tls_report(tls_json(policies=[{"policy": "sts", "summary": {}}]))


class TestParsePayload:
    def _payload(self, data, kind):
        return ExtractedPayload(
            mail_id="mail-1",
            mail_uid=7,
            kind=kind,
            data=data,
            digest=content_digest(data),
        )

    def test_returns_report(self):
        outcome = parse_payload(self._payload(dmarc_xml(), ReportKind.DMARC))
        assert isinstance(outcome, DmarcReport)

    def test_returns_failure_instead_of_raising(self, caplog):
        data = b"<feedback><report_metadata/></feedback>"
        outcome = parse_payload(self._payload(data, ReportKind.DMARC))

        assert isinstance(outcome, ParseFailure)
        assert outcome.mail_id == "mail-1"
        assert outcome.mail_uid == 7
        assert outcome.digest == content_digest(data)
        assert outcome.payload == data.decode()
        assert "Failed to parse dmarc report" in caplog.text

    def test_undecodable_payload_is_kept_lossy(self):
        data = b"\xff\xfe{"
        outcome = parse_payload(self._payload(data, ReportKind.TLS))

        assert isinstance(outcome, ParseFailure)
        assert outcome.kind is ReportKind.TLS
        assert "�" in outcome.payload

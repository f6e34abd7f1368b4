"""
Tests for the payload extractor.

Tests cover:
- RFC 2231 name continuation merging
- ZIP, GZIP and plain attachments
- Report kind inference
- Soft failures for broken attachments and mails
"""

import base64
from email.message import EmailMessage

from conftest import build_mail, dmarc_xml, gzip_bytes, raw_message, tls_json, zip_bytes

from dmarc_watch.extractor import (
    extract_payloads,
    infer_kind,
    mail_id_for,
    merge_name_parts,
    xml_from_zip,
)
from dmarc_watch.models import ReportKind
from dmarc_watch.utils import content_digest


class TestMergeNameParts:
    def test_merges_split_name(self):
        value = (
            "application/octet-stream;  "
            "name*0=amazonses.com!xxxxxxxxxxxxxxxxxxxxxx!1745884800!1745971200.xm;  name*1=l.gz"
        )
        assert merge_name_parts(value) == (
            'application/octet-stream; '
            'name="amazonses.com!xxxxxxxxxxxxxxxxxxxxxx!1745884800!1745971200.xml.gz"'
        )

    def test_merges_three_parts(self):
        value = "application/octet-stream;  name*0=foo;  name*1=bar;  name*2=.jpeg"
        assert merge_name_parts(value) == 'application/octet-stream; name="foobar.jpeg"'

    def test_strips_quotes(self):
        value = 'application/octet-stream; name*0="foo"; name*1="bar"; name*2=".jpeg"'
        assert merge_name_parts(value) == 'application/octet-stream; name="foobar.jpeg"'

    def test_leaves_plain_values_alone(self):
        value = 'application/zip; name="report.zip"'
        assert merge_name_parts(value) == value


class TestInferKind:
    def test_by_filename(self):
        assert infer_kind(b"<feedback/>", "report.xml") is ReportKind.DMARC
        assert infer_kind(b"{}", "report.json") is ReportKind.TLS

    def test_by_content_type(self):
        assert infer_kind(b"", "", "application/tlsrpt+gzip") is ReportKind.TLS

    def test_by_sniffing(self):
        assert infer_kind(b'  {"policies": []}') is ReportKind.TLS
        assert infer_kind(b"<?xml version='1.0'?><feedback/>") is ReportKind.DMARC


class TestXmlFromZip:
    def test_skips_non_xml_members(self, caplog):
        archive = zip_bytes({"report.xml": dmarc_xml(), "readme.txt": b"hello"})

        documents = xml_from_zip(archive)

        assert [name for name, _ in documents] == ["report.xml"]
        assert "readme.txt" in caplog.text


class TestExtractPayloads:
    def test_zip_attachment(self):
        archive = zip_bytes({"report.xml": dmarc_xml(), "readme.txt": b"hello"})
        body = build_mail([(archive, "application", "zip", "google.com!example.com.zip")])

        result = extract_payloads(raw_message(body))

        assert len(result.payloads) == 1
        payload = result.payloads[0]
        assert payload.kind is ReportKind.DMARC
        assert payload.data == dmarc_xml()
        assert payload.digest == content_digest(dmarc_xml())
        assert payload.mail_uid == 1
        assert result.mail.xml_files == 1
        assert result.mail.json_files == 0

    def test_octet_stream_gzip_by_name(self):
        body = build_mail(
            [(gzip_bytes(dmarc_xml()), "application", "octet-stream", "example.com!1.xml.gz")]
        )

        result = extract_payloads(raw_message(body))

        assert len(result.payloads) == 1
        assert result.payloads[0].kind is ReportKind.DMARC
        assert result.payloads[0].filename == "example.com!1.xml"

    def test_tlsrpt_gzip(self):
        body = build_mail(
            [(gzip_bytes(tls_json()), "application", "tlsrpt+gzip", "company-x!report.json.gz")]
        )

        result = extract_payloads(raw_message(body))

        assert len(result.payloads) == 1
        assert result.payloads[0].kind is ReportKind.TLS
        assert result.mail.json_files == 1

    def test_plain_xml_attachment(self):
        body = build_mail([(dmarc_xml(), "text", "xml", "report.xml")])

        result = extract_payloads(raw_message(body))

        assert [p.kind for p in result.payloads] == [ReportKind.DMARC]

    def test_header_metadata(self):
        body = build_mail([(dmarc_xml(), "text", "xml", "report.xml")], subject="Report domain: x")

        mail = extract_payloads(raw_message(body)).mail

        assert mail.subject == "Report domain: x"
        assert mail.sender == "dmarc@google.com"
        assert mail.to == "dmarc@example.com"
        assert mail.date is not None and mail.date.year == 2023

    def test_corrupt_archive_does_not_stop_other_parts(self, caplog):
        body = build_mail(
            [
                (b"not a zip archive", "application", "zip", "broken.zip"),
                (gzip_bytes(dmarc_xml()), "application", "gzip", "report.xml.gz"),
            ]
        )

        result = extract_payloads(raw_message(body))

        assert len(result.payloads) == 1
        assert "Failed to extract part" in caplog.text

    def test_corrupt_gzip_is_soft_failure(self):
        body = build_mail([(b"\x1f\x8bgarbage", "application", "gzip", "report.xml.gz")])

        result = extract_payloads(raw_message(body))

        assert result.payloads == []

    def test_mail_without_attachments(self):
        msg = EmailMessage()
        msg["Subject"] = "hello"
        msg.set_content("no reports here")

        result = extract_payloads(raw_message(msg.as_bytes()))

        assert result.payloads == []
        assert result.mail.subject == "hello"

    def test_garbage_body(self):
        result = extract_payloads(raw_message(b"\x00\x01 not a mail at all"))
        assert result.payloads == []

    def test_missing_body(self):
        message = raw_message(None)
        message.oversized = True

        result = extract_payloads(message)

        assert result.payloads == []
        assert result.mail.oversized is True

    def test_split_name_header(self):
        report = gzip_bytes(dmarc_xml())
        body = (
            b"From: dmarc@amazonses.com\r\n"
            b"Subject: Report\r\n"
            b"MIME-Version: 1.0\r\n"
            b'Content-Type: multipart/mixed; boundary="b1"\r\n'
            b"\r\n"
            b"--b1\r\n"
            b"Content-Type: application/octet-stream;\r\n"
            b"  name*0=amazonses.com!example.com!1745884800!1745971200.xm;\r\n"
            b"  name*1=l.gz\r\n"
            b"Content-Transfer-Encoding: base64\r\n"
            b"\r\n"
            + base64.encodebytes(report).replace(b"\n", b"\r\n")
            + b"--b1--\r\n"
        )

        result = extract_payloads(raw_message(body))

        assert len(result.payloads) == 1
        assert result.payloads[0].kind is ReportKind.DMARC
        assert result.payloads[0].data == dmarc_xml()


class TestMailId:
    def test_stable_across_polls(self):
        body = build_mail([(dmarc_xml(), "text", "xml", "report.xml")])
        assert mail_id_for(raw_message(body, uid=1)) == mail_id_for(raw_message(body, uid=1))

    def test_depends_on_folder(self):
        body = build_mail([(dmarc_xml(), "text", "xml", "report.xml")])
        assert mail_id_for(raw_message(body, folder="INBOX")) != mail_id_for(
            raw_message(body, folder="Archive")
        )

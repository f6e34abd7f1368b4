"""
pytest configuration and shared fixtures.

Builds report documents and MIME mails in memory so no test needs a network
connection or files on disk.
"""

import gzip
import io
import json
import zipfile
from email.message import EmailMessage

import pytest

from dmarc_watch.models import RawMessage

DMARC_XML = """<?xml version="1.0" encoding="UTF-8" ?>
<feedback>
  <version>1.0</version>
  <report_metadata>
    <org_name>google.com</org_name>
    <email>noreply-dmarc-support@google.com</email>
    <extra_contact_info>https://support.google.com/a/answer/2466580</extra_contact_info>
    <report_id>{report_id}</report_id>
    <date_range>
      <begin>1700000000</begin>
      <end>{end}</end>
    </date_range>
  </report_metadata>
  <policy_published>
    <domain>Example.com</domain>
    <adkim>r</adkim>
    <aspf>r</aspf>
    <p>none</p>
    <sp>{sp}</sp>
    <pct>100</pct>
  </policy_published>
  <record>
    <row>
      <source_ip>192.0.2.10</source_ip>
      <count>3</count>
      <policy_evaluated>
        <disposition>none</disposition>
        <dkim>{dkim}</dkim>
        <spf>pass</spf>
      </policy_evaluated>
    </row>
    <identifiers>
      <header_from>example.com</header_from>
    </identifiers>
    <auth_results>
      <dkim>
        <domain>example.com</domain>
        <result>{dkim}</result>
        <selector>s1</selector>
      </dkim>
      <spf>
        <domain>example.com</domain>
        <result>{spf_auth}</result>
      </spf>
    </auth_results>
  </record>
</feedback>
"""

TLS_REPORT = {
    "organization-name": "Company-X",
    "date-range": {
        "start-datetime": "2016-04-01T00:00:00Z",
        "end-datetime": "2016-04-01T23:59:59Z",
    },
    "contact-info": "sts-reporting@company-x.example",
    "report-id": "5065427c-23d3-47ca-b6e0-946ea0e8c4be",
    "policies": [
        {
            "policy": {
                "policy-type": "sts",
                "policy-string": ["version: STSv1", "mode: testing", "mx: *.mail.company-y.example", "max_age: 86400"],
                "policy-domain": "company-y.example",
                "mx-host": ["*.mail.company-y.example"],
            },
            "summary": {
                "total-successful-session-count": 5326,
                "total-failure-session-count": 303,
            },
            "failure-details": [
                {
                    "result-type": "certificate-expired",
                    "sending-mta-ip": "2001:db8:abcd:0012::1",
                    "receiving-mx-hostname": "mx1.mail.company-y.example",
                    "failed-session-count": 100,
                },
                {
                    "result-type": "starttls-not-supported",
                    "sending-mta-ip": "2001:db8:abcd:0013::1",
                    "receiving-mx-hostname": "mx2.mail.company-y.example",
                    "receiving-ip": "203.0.113.56",
                    "failed-session-count": 200,
                    "additional-information": "https://reports.company-x.example/report_info?id=5065427c-23d3#StarttlsNotSupported",
                },
                {
                    "result-type": "validation-failure",
                    "sending-mta-ip": "198.51.100.62",
                    "receiving-ip": "203.0.113.58",
                    "receiving-mx-hostname": "mx-backup.mail.company-y.example",
                    "failed-session-count": 3,
                    "failure-reason-code": "X509_V_ERR_PROXY_PATH_LENGTH_EXCEEDED",
                },
            ],
        }
    ],
}


def dmarc_xml(
    report_id="report-1", dkim="pass", spf_auth="pass", sp="none", end=1700086399
) -> bytes:
    return DMARC_XML.format(
        report_id=report_id, dkim=dkim, spf_auth=spf_auth, sp=sp, end=end
    ).encode("utf-8")


def tls_json(**overrides) -> bytes:
    report = dict(TLS_REPORT)
    report.update(overrides)
    return json.dumps(report).encode("utf-8")


def zip_bytes(members: dict) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def gzip_bytes(data: bytes) -> bytes:
    return gzip.compress(data)


def build_mail(attachments, subject="Report domain: example.com", sender="dmarc@google.com") -> bytes:
    """Build a multipart mail; attachments are (data, maintype, subtype, filename) tuples."""
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = "dmarc@example.com"
    msg["Date"] = "Wed, 15 Nov 2023 10:00:00 +0000"
    msg.set_content("This is an aggregate report.")
    for data, maintype, subtype, filename in attachments:
        msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_bytes()


def raw_message(body, uid=1, account="reports@imap.example.com", folder="INBOX") -> RawMessage:
    return RawMessage(
        uid=uid,
        account=account,
        folder=folder,
        size=len(body) if body is not None else 0,
        body=body,
    )


@pytest.fixture
def settings_env(monkeypatch):
    """Minimal environment for constructing Settings."""
    monkeypatch.setenv("IMAP_HOST", "imap.example.com")
    monkeypatch.setenv("IMAP_USER", "reports")
    monkeypatch.setenv("IMAP_PASSWORD", "secret")
    for name in (
        "IMAP_PORT",
        "IMAP_FOLDER",
        "IMAP_STARTTLS",
        "IMAP_DISABLE_TLS",
        "IMAP_TLS_CA_CERTS",
        "IMAP_TIMEOUT",
        "IMAP_CHUNK_SIZE",
        "IMAP_CHECK_INTERVAL",
        "IMAP_CHECK_SCHEDULE",
        "MAX_MAIL_SIZE",
        "PARSE_CACHE_SIZE",
        "MAIL_WEB_HOOK_URL",
        "MAIL_WEB_HOOK_METHOD",
        "MAIL_WEB_HOOK_HEADERS",
        "MAIL_WEB_HOOK_BODY",
        "MAIL_WEB_HOOK_SKIP_INITIAL",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch

"""Find compressed (or plain) report documents inside raw mails.

Walks the MIME tree of one message and yields every DMARC XML or SMTP TLS JSON
document found in ZIP, GZIP or uncompressed attachments. Failures are scoped
to the part that caused them; a broken attachment never stops the remaining
parts or messages from being processed.
"""

from __future__ import annotations

import email
import email.policy
import gzip
import logging
import re
import zipfile
import zlib
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import parsedate_to_datetime
from io import BytesIO
from typing import Optional

from .models import ExtractedPayload, MailRecord, RawMessage, ReportKind
from .utils import content_digest, ensure_utc

logger = logging.getLogger(__name__)

GENERIC_TYPES = ("application/octet-stream", "binary/octet-stream")
ZIP_TYPES = ("application/zip", "application/x-zip", "application/x-zip-compressed")
GZIP_TYPES = ("application/gzip", "application/x-gzip", "application/tlsrpt+gzip")
PLAIN_XML_TYPES = ("text/xml", "application/xml")
PLAIN_JSON_TYPES = ("application/tlsrpt+json", "application/json")

_NAME_PART = re.compile(r"^name\*(\d+)\*?=(.*)$", re.IGNORECASE)


class ExtractionError(RuntimeError):
    """Raised when a message or attachment cannot be unpacked."""


@dataclass
class ExtractionResult:
    """Payloads found in one mail plus the metadata worth keeping."""

    mail: MailRecord
    payloads: list[ExtractedPayload] = field(default_factory=list)


def merge_name_parts(value: str) -> str:
    """Reassemble RFC 2231 continuation parameters into one ``name``.

    Some providers split long attachment names across header lines::

        application/octet-stream;
          name*0=amazonses.com!example.com!1745884800!1745971200.xm;
          name*1=l.gz

    The segments are joined in order, surrounding quotes and trailing
    semicolons are dropped and the result is appended as ``name="..."``.
    Segments that are not part of the continuation are kept as they are.
    """
    kept: list[str] = []
    name_buffer = ""
    expected = 0

    for segment in re.split(r";\s+", value.strip()):
        segment = segment.strip()
        match = _NAME_PART.match(segment)
        if match and int(match.group(1)) == expected:
            expected += 1
            candidate = match.group(2).rstrip(";")
            if len(candidate) > 2 and candidate.startswith('"') and candidate.endswith('"'):
                candidate = candidate[1:-1]
            name_buffer += candidate
        elif segment:
            kept.append(segment)

    merged = "; ".join(kept)
    if name_buffer:
        merged += f'; name="{name_buffer}"'
    return merged


def _name_from_content_type(content_type: str) -> Optional[str]:
    match = re.search(r'(?:^|;)\s*name="?([^";]+)"?', content_type, re.IGNORECASE)
    return match.group(1).strip() if match else None


def _classify(content_type: str, filename: str) -> Optional[str]:
    """Return ``zip``, ``gzip``, ``xml``, ``json`` or None for a part."""
    mime = content_type.split(";", 1)[0].strip().lower()
    name = filename.lower()
    generic = mime in GENERIC_TYPES

    if mime in ZIP_TYPES or (generic and name.endswith(".zip")):
        return "zip"
    if mime in GZIP_TYPES or (generic and name.endswith(".gz")):
        return "gzip"
    if mime in PLAIN_XML_TYPES or (generic and name.endswith(".xml")):
        return "xml"
    if mime in PLAIN_JSON_TYPES or (generic and name.endswith(".json")):
        return "json"
    return None


def infer_kind(data: bytes, filename: str = "", content_type: str = "") -> ReportKind:
    """Decide whether a payload is a DMARC (XML) or TLS (JSON) report."""
    name = filename.lower()
    mime = content_type.lower()
    if "tlsrpt" in mime or name.endswith((".json", ".json.gz")):
        return ReportKind.TLS
    if name.endswith((".xml", ".xml.gz")):
        return ReportKind.DMARC
    if data.lstrip()[:1] == b"{":
        return ReportKind.TLS
    return ReportKind.DMARC


def xml_from_zip(zip_bytes: bytes) -> list[tuple[str, bytes]]:
    """Read every ``.xml`` member of a ZIP archive."""
    try:
        archive = zipfile.ZipFile(BytesIO(zip_bytes))
    except (zipfile.BadZipFile, OSError) as exc:
        raise ExtractionError(f"Failed to open ZIP archive: {exc}") from exc

    documents: list[tuple[str, bytes]] = []
    with archive:
        members = archive.infolist()
        if not members:
            logger.warning("ZIP archive is empty")
        for member in members:
            if member.is_dir():
                continue
            if not member.filename.lower().endswith(".xml"):
                logger.warning("File %s in ZIP is not an XML file, skipping", member.filename)
                continue
            try:
                documents.append((member.filename, archive.read(member)))
            except (zipfile.BadZipFile, OSError, EOFError, zlib.error, RuntimeError) as exc:
                logger.warning("Failed to read %s from ZIP archive: %s", member.filename, exc)
    return documents


def data_from_gzip(gz_bytes: bytes) -> bytes:
    """Decompress a single GZIP stream."""
    try:
        return gzip.decompress(gz_bytes)
    except (OSError, EOFError, zlib.error) as exc:
        raise ExtractionError(f"Failed to decompress GZIP stream: {exc}") from exc


def mail_id_for(message: RawMessage) -> str:
    """Stable identifier for a mail across polling sessions."""
    if message.body is not None:
        return content_digest(message.account, b"\0", message.folder, b"\0", message.body)
    return content_digest(
        message.account, b"\0", message.folder, b"\0", f"{message.uid}:{message.size}"
    )


def _header(msg: EmailMessage, name: str) -> str:
    try:
        value = msg.get(name)
    except (ValueError, IndexError) as exc:
        logger.debug("Unable to decode header %s: %s", name, exc)
        return ""
    return str(value).strip() if value is not None else ""


def _mail_record(message: RawMessage, mail_id: str, msg: Optional[EmailMessage]) -> MailRecord:
    record = MailRecord(
        mail_id=mail_id,
        uid=message.uid,
        account=message.account,
        folder=message.folder,
        size=message.size,
        oversized=message.oversized,
    )
    if msg is None:
        return record
    record.subject = _header(msg, "Subject")
    record.sender = _header(msg, "From")
    record.to = _header(msg, "To")
    raw_date = _header(msg, "Date")
    if raw_date:
        try:
            record.date = ensure_utc(parsedate_to_datetime(raw_date))
        except (TypeError, ValueError):
            logger.debug("Unparseable Date header %r in mail with UID %s", raw_date, message.uid)
    return record


def _payload(
    record: MailRecord, data: bytes, filename: str, content_type: str
) -> ExtractedPayload:
    return ExtractedPayload(
        mail_id=record.mail_id,
        mail_uid=record.uid,
        kind=infer_kind(data, filename, content_type),
        data=data,
        digest=content_digest(data),
        filename=filename or None,
    )


def _extract_part(
    record: MailRecord, part: EmailMessage, index: int
) -> list[ExtractedPayload]:
    raw_type = _header(part, "Content-Type")
    if not raw_type:
        logger.debug("Skipping part %s of mail with UID %s without content type", index, record.uid)
        return []

    content_type = merge_name_parts(raw_type)
    filename = (
        _name_from_content_type(content_type)
        or _safe_filename(part)
        or ""
    )
    container = _classify(content_type, filename)
    if container is None:
        return []

    body = part.get_payload(decode=True)
    if not body:
        logger.warning(
            "Attachment %r in part %s of mail with UID %s is empty", filename, index, record.uid
        )
        return []

    logger.debug(
        "Detected %s attachment %r in part %s of mail with UID %s",
        container,
        filename,
        index,
        record.uid,
    )
    if container == "zip":
        return [
            _payload(record, data, member, "application/xml")
            for member, data in xml_from_zip(body)
        ]
    if container == "gzip":
        inner_name = filename[:-3] if filename.lower().endswith(".gz") else filename
        return [_payload(record, data_from_gzip(body), inner_name, content_type)]
    return [_payload(record, body, filename, content_type)]


def _safe_filename(part: EmailMessage) -> Optional[str]:
    try:
        return part.get_filename()
    except (ValueError, IndexError):
        return None


def extract_payloads(message: RawMessage) -> ExtractionResult:
    """Unpack all report documents from one raw message.

    Never raises for bad input: malformed MIME or broken attachments are
    logged as warnings and simply contribute no payloads.
    """
    mail_id = mail_id_for(message)
    if message.body is None:
        logger.debug("Skipping extraction for mail with UID %s without body", message.uid)
        return ExtractionResult(mail=_mail_record(message, mail_id, None))

    try:
        msg = email.message_from_bytes(message.body, policy=email.policy.default)
    except (ValueError, TypeError, IndexError) as exc:
        logger.warning("Failed to parse mail with UID %s: %s", message.uid, exc)
        return ExtractionResult(mail=_mail_record(message, mail_id, None))

    result = ExtractionResult(mail=_mail_record(message, mail_id, msg))
    parts = [part for part in msg.walk() if not part.is_multipart()]
    logger.debug("Parsed mail with UID %s and found %s parts", message.uid, len(parts))

    for index, part in enumerate(parts):
        try:
            result.payloads.extend(_extract_part(result.mail, part, index))
        except ExtractionError as exc:
            logger.warning(
                "Failed to extract part %s of mail with UID %s: %s", index, message.uid, exc
            )

    for payload in result.payloads:
        if payload.kind is ReportKind.DMARC:
            result.mail.xml_files += 1
        else:
            result.mail.json_files += 1
    return result

"""IMAP helper focused on listing and downloading report mails."""

from __future__ import annotations

import imaplib
import logging
import re
import ssl
from typing import Iterable

from .config import Settings
from .models import RawMessage
from .utils import chunked

logger = logging.getLogger(__name__)

_UID = re.compile(rb"UID (\d+)", re.IGNORECASE)
_SIZE = re.compile(rb"RFC822\.SIZE (\d+)", re.IGNORECASE)


class MailTransportError(RuntimeError):
    """Raised when the mailbox cannot be reached or read."""


class ImapClient:
    """Thin wrapper that logs into the mailbox and downloads raw mails read-only."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.account = f"{settings.imap_user}@{settings.imap_host}"

    def fetch_messages(self) -> list[RawMessage]:
        """Download every mail in the configured folder, oversized ones without body."""
        try:
            connection = self._connect()
        except (imaplib.IMAP4.error, OSError) as exc:
            raise MailTransportError(
                f"Failed to connect to {self.settings.imap_host}:{self.settings.imap_port}: {exc}"
            ) from exc

        try:
            return self._fetch(connection)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise MailTransportError(f"IMAP session failed: {exc}") from exc
        finally:
            try:
                connection.logout()
            except (imaplib.IMAP4.error, OSError) as exc:
                logger.debug("IMAP logout failed: %s", exc)

    def _connect(self) -> imaplib.IMAP4:
        settings = self.settings
        if settings.imap_disable_tls:
            logger.warning("TLS is disabled for IMAP connection to %s", settings.imap_host)
            connection = imaplib.IMAP4(
                settings.imap_host, settings.imap_port, timeout=settings.imap_timeout
            )
        elif settings.imap_starttls:
            connection = imaplib.IMAP4(
                settings.imap_host, settings.imap_port, timeout=settings.imap_timeout
            )
            connection.starttls(ssl_context=self._ssl_context())
        else:
            connection = imaplib.IMAP4_SSL(
                settings.imap_host,
                settings.imap_port,
                ssl_context=self._ssl_context(),
                timeout=settings.imap_timeout,
            )
        logger.debug("Connected to IMAP server %s:%s", settings.imap_host, settings.imap_port)
        connection.login(settings.imap_user, settings.imap_password)
        logger.debug("IMAP login successful for %s", settings.imap_user)
        return connection

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if self.settings.imap_tls_ca_certs:
            context.load_verify_locations(cafile=str(self.settings.imap_tls_ca_certs))
        return context

    def _fetch(self, connection: imaplib.IMAP4) -> list[RawMessage]:
        folder = self.settings.imap_folder
        status, data = connection.select(self._quote(folder), readonly=True)
        if status != "OK":
            raise MailTransportError(f"Failed to select folder {folder}: {data!r}")

        status, data = connection.uid("SEARCH", None, "ALL")
        if status != "OK":
            raise MailTransportError(f"Failed to search folder {folder}: {data!r}")
        uids = [int(uid) for uid in (data[0] or b"").split()]
        logger.info("Found %s mail(s) in %s", len(uids), folder)
        if not uids:
            return []

        sizes: dict[int, int] = {}
        for chunk in chunked(uids, self.settings.imap_chunk_size):
            sizes.update(self._fetch_sizes(connection, chunk))

        wanted = [uid for uid in uids if sizes.get(uid, 0) <= self.settings.max_mail_size]
        oversized = [uid for uid in uids if uid in sizes and uid not in wanted]
        for uid in oversized:
            logger.warning(
                "Mail with UID %s is %s bytes, above the limit of %s; skipping body",
                uid,
                sizes[uid],
                self.settings.max_mail_size,
            )

        bodies: dict[int, bytes] = {}
        for chunk in chunked(wanted, self.settings.imap_chunk_size):
            bodies.update(self._fetch_bodies(connection, chunk))

        messages = []
        for uid in uids:
            body = bodies.get(uid)
            messages.append(
                RawMessage(
                    uid=uid,
                    account=self.account,
                    folder=folder,
                    size=sizes.get(uid, len(body) if body else 0),
                    body=body,
                    oversized=uid in oversized,
                )
            )
        logger.info(
            "Downloaded %s mail body(ies), %s oversized", len(bodies), len(oversized)
        )
        return messages

    def _fetch_sizes(self, connection: imaplib.IMAP4, uids: list[int]) -> dict[int, int]:
        status, data = connection.uid("FETCH", self._uid_set(uids), "(RFC822.SIZE)")
        if status != "OK":
            raise MailTransportError(f"Failed to fetch mail sizes: {data!r}")
        sizes = {}
        for item in data:
            line = item[0] if isinstance(item, tuple) else item
            if not isinstance(line, bytes):
                continue
            uid, size = _UID.search(line), _SIZE.search(line)
            if uid and size:
                sizes[int(uid.group(1))] = int(size.group(1))
        return sizes

    def _fetch_bodies(self, connection: imaplib.IMAP4, uids: list[int]) -> dict[int, bytes]:
        status, data = connection.uid("FETCH", self._uid_set(uids), "(BODY.PEEK[])")
        if status != "OK":
            raise MailTransportError(f"Failed to fetch mail bodies: {data!r}")
        bodies = {}
        for item in data:
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            uid = _UID.search(item[0])
            if uid is None:
                logger.debug("Ignoring FETCH response without UID: %r", item[0][:80])
                continue
            bodies[int(uid.group(1))] = item[1]
        return bodies

    @staticmethod
    def _uid_set(uids: Iterable[int]) -> str:
        return ",".join(str(uid) for uid in uids)

    @staticmethod
    def _quote(folder: str) -> str:
        if folder.startswith('"'):
            return folder
        return '"' + folder.replace("\\", "\\\\").replace('"', '\\"') + '"'

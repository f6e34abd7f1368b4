"""One ingestion cycle: fetch, extract, parse, merge, notify."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Callable, Optional, Union

import requests

from .cache import BoundedCache
from .config import Settings
from .extractor import extract_payloads
from .imap_client import ImapClient, MailTransportError
from .models import (
    ExtractedPayload,
    MailRecord,
    ParsedReport,
    ParseFailure,
    RawMessage,
    ReportKind,
)
from .parser import parse_payload
from .state import AppliedCycle, CycleUpdate, SharedState
from .store import ParsedPayload
from .web_hook import WebHookNotifier

logger = logging.getLogger(__name__)

Outcome = Union[ParsedReport, ParseFailure]

_MISSING = object()


class IngestionPipeline:
    """Glue between the mail transport, the parsers and the shared state.

    Blocking work (IMAP, decompression, XML/JSON parsing, HTTP) runs in worker
    threads so the event loop stays free for readers of the shared state.
    """

    def __init__(
        self,
        state: SharedState,
        fetch: Callable[[], list[RawMessage]],
        notifier: Optional[WebHookNotifier] = None,
        parse_cache_size: int = 10000,
        skip_initial_notifications: bool = False,
    ) -> None:
        self.state = state
        self.fetch = fetch
        self.notifier = notifier
        self.parse_cache: BoundedCache[str, Outcome] = BoundedCache(parse_cache_size)
        self.skip_initial_notifications = skip_initial_notifications

    @classmethod
    def from_settings(cls, settings: Settings, state: SharedState) -> "IngestionPipeline":
        notifier = WebHookNotifier(settings) if settings.mail_web_hook_url else None
        return cls(
            state,
            ImapClient(settings).fetch_messages,
            notifier=notifier,
            parse_cache_size=settings.parse_cache_size,
            skip_initial_notifications=settings.mail_web_hook_skip_initial,
        )

    async def run_cycle(self) -> AppliedCycle:
        """Run one full cycle and merge its outcome into the shared state."""
        logger.info("Starting ingestion cycle")
        try:
            messages = await asyncio.to_thread(self.fetch)
        except MailTransportError as exc:
            logger.error("Failed to fetch mails: %s", exc)
            applied = await self.state.apply_cycle(CycleUpdate(error=str(exc)))
            return applied

        update = await asyncio.to_thread(self.process, messages)
        applied = await self.state.apply_cycle(update)
        await self._notify(applied)
        return applied

    def process(self, messages: list[RawMessage]) -> CycleUpdate:
        """Extract and parse every message. Runs in a worker thread."""
        update = CycleUpdate()
        for message in messages:
            try:
                mail, parsed = self._process_message(message)
            except Exception as exc:
                logger.warning(
                    "Skipping mail with UID %s: %s: %s", message.uid, type(exc).__name__, exc
                )
                continue
            update.parsed.extend(parsed)
            update.mails.append(mail)
        logger.info(
            "Processed %s mail(s) with %s report payload(s)", len(update.mails), len(update.parsed)
        )
        return update

    def _process_message(self, message: RawMessage) -> tuple[MailRecord, list[ParsedPayload]]:
        extraction = extract_payloads(message)
        mail = extraction.mail
        parsed = []
        for payload in extraction.payloads:
            outcome = self._parse(payload)
            if isinstance(outcome, ParseFailure):
                if payload.kind is ReportKind.DMARC:
                    mail.xml_parsing_errors += 1
                else:
                    mail.json_parsing_errors += 1
            parsed.append(ParsedPayload(payload=payload, outcome=outcome))
        return mail, parsed

    def _parse(self, payload: ExtractedPayload) -> Outcome:
        outcome = self.parse_cache.get(payload.digest, _MISSING)
        if outcome is _MISSING:
            outcome = parse_payload(payload)
            self.parse_cache.insert(payload.digest, outcome)
        elif isinstance(outcome, ParseFailure) and outcome.mail_id != payload.mail_id:
            # The memo is keyed by content; the failure belongs to the mail at hand.
            outcome = replace(outcome, mail_id=payload.mail_id, mail_uid=payload.mail_uid)
        return outcome

    async def _notify(self, applied: AppliedCycle) -> None:
        if self.notifier is None or not applied.new_mails:
            return
        if applied.initial and self.skip_initial_notifications:
            logger.info(
                "Skipping web hook for %s mail(s) found on the first cycle",
                len(applied.new_mails),
            )
            return
        for mail in applied.new_mails:
            await self._notify_mail(mail)

    async def _notify_mail(self, mail: MailRecord) -> None:
        try:
            await asyncio.to_thread(
                self.notifier.notify,
                mail,
                mail.xml_files - mail.xml_parsing_errors,
                mail.json_files - mail.json_parsing_errors,
            )
        except requests.RequestException as exc:
            logger.error("Web hook for new mail %s failed: %s", mail.mail_id, exc)

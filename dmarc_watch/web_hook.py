"""Outbound web hook fired for every newly seen mail."""

from __future__ import annotations

import logging
from string import Template
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from .config import Settings
from .models import MailRecord

logger = logging.getLogger(__name__)


class WebHookNotifier:
    """Send one HTTP request per new mail, with ``$placeholder`` templating."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None) -> None:
        if not settings.mail_web_hook_url:
            raise ValueError("MAIL_WEB_HOOK_URL is required for web hook notifications")
        self.settings = settings
        self.session = session or requests.Session()
        self.url_template = Template(settings.mail_web_hook_url)
        self.body_template = (
            Template(settings.mail_web_hook_body) if settings.mail_web_hook_body else None
        )
        self.method = settings.mail_web_hook_method
        self.headers = settings.mail_web_hook_headers
        self.timeout = max(settings.imap_timeout, 10)

    @staticmethod
    def template_values(
        mail: MailRecord, dmarc_reports: int = 0, tls_reports: int = 0
    ) -> Dict[str, Any]:
        return {
            "id": mail.mail_id,
            "uid": mail.uid,
            "sender": mail.sender,
            "subject": mail.subject,
            "folder": mail.folder,
            "account": mail.account,
            "dmarc_reports": dmarc_reports,
            "tls_reports": tls_reports,
        }

    def render(
        self, mail: MailRecord, dmarc_reports: int = 0, tls_reports: int = 0
    ) -> tuple[str, Optional[str]]:
        """Return the URL and body for one mail. Unknown placeholders stay as they are."""
        values = self.template_values(mail, dmarc_reports, tls_reports)
        url_values = {key: quote(str(value), safe="") for key, value in values.items()}
        url = self.url_template.safe_substitute(url_values)
        body = self.body_template.safe_substitute(values) if self.body_template else None
        return url, body

    def notify(self, mail: MailRecord, dmarc_reports: int = 0, tls_reports: int = 0) -> int:
        """Fire the hook for one mail and return the HTTP status code."""
        url, body = self.render(mail, dmarc_reports, tls_reports)
        logger.debug("Calling web hook %s %s for mail %s", self.method, url, mail.mail_id)
        response = self.session.request(
            self.method,
            url,
            headers=self.headers,
            data=body.encode("utf-8") if body is not None else None,
            timeout=self.timeout,
        )

        if response.status_code >= 400:
            logger.error(
                "Web hook for mail %s failed (%s): %s",
                mail.mail_id,
                response.status_code,
                response.text[:1024],
            )
            response.raise_for_status()

        logger.debug(
            "Web hook for mail %s responded with status code %s",
            mail.mail_id,
            response.status_code,
        )
        return response.status_code

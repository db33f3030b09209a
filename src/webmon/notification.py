"""Asynchronous delivery of problem reports by mail and webhook."""

import queue
import smtplib
import ssl
from collections.abc import Sequence
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import requests
import structlog

from webmon.config import Config, Encryption
from webmon.problems import ProblemReport, format_reports, is_problem, reports_to_html
from webmon.service import BackgroundService

logger = structlog.get_logger()

WEBHOOK_TIMEOUT_SECONDS = 10
SMTP_TIMEOUT_SECONDS = 30

_STOP = object()


def build_email(config: Config, reports: Sequence[ProblemReport], testing: bool = False) -> MIMEMultipart:
    """Build a multipart mail with a plain text and an HTML rendering of the reports."""
    msg = MIMEMultipart("alternative")
    msg["Subject"] = "WebMon: Problems notification" + (" (testing mail)" if testing else "")
    msg["From"] = config.mail_from or ""
    msg["To"] = ", ".join(config.mail_recipients)
    msg.attach(MIMEText(format_reports(reports, "\n"), "plain"))
    msg.attach(MIMEText(f"<html><body>\n{reports_to_html(reports)}\n</body></html>", "html"))
    return msg


def send_email(config: Config, reports: Sequence[ProblemReport], testing: bool = False) -> None:
    """
    Mail the reports to the configured recipients. Does nothing if mail is not configured.

    Raises:
        smtplib.SMTPException, OSError: if sending fails.
    """
    if not config.email_enabled:
        return
    msg = build_email(config, reports, testing)
    host = config.mail_smtp_host.strip()
    port = config.mail_smtp_port if config.mail_smtp_port > 0 else 0
    if config.mail_smtp_encryption is Encryption.SSL:
        server: smtplib.SMTP = smtplib.SMTP_SSL(
            host, port, timeout=SMTP_TIMEOUT_SECONDS, context=ssl.create_default_context()
        )
    else:
        server = smtplib.SMTP(host, port, timeout=SMTP_TIMEOUT_SECONDS)
    with server:
        if config.mail_smtp_encryption is Encryption.TLS:
            server.starttls(context=ssl.create_default_context())
        if config.mail_smtp_username is not None:
            server.login(config.mail_smtp_username, config.mail_smtp_password or "")
        server.send_message(msg)


def webhook_payload(reports: Sequence[ProblemReport], testing: bool = False) -> dict:
    return {
        "source": "webmon",
        "testing": testing,
        "problem": is_problem(reports),
        "reports": [
            {
                "class": r.problem_class,
                "problem": r.is_problem,
                "diagnosis": r.diagnosis,
                "description": r.description,
                "created": r.created,
            }
            for r in reports
        ],
    }


def send_webhook(config: Config, reports: Sequence[ProblemReport], testing: bool = False) -> None:
    """
    POST the reports as JSON to the configured URL. Does nothing if no URL is configured.

    Raises:
        requests.RequestException: if the request fails or the server answers with an error status.
    """
    if not config.webhook_enabled:
        return
    response = requests.post(
        config.webhook_url.strip(), json=webhook_payload(reports, testing), timeout=WEBHOOK_TIMEOUT_SECONDS
    )
    response.raise_for_status()


class NotificationDelivery(BackgroundService):
    """
    Delivers report sets on a single worker thread.

    deliver_async() enqueues into an unbounded queue and never blocks. A
    failing sink is logged and does not affect the other sink nor the
    following deliveries.
    """

    def __init__(self, config: Config) -> None:
        super().__init__("Notificator")
        self._config = config
        self._queue: queue.Queue = queue.Queue()
        self.sinks = [("mail", send_email), ("webhook", send_webhook)]

    @property
    def config(self) -> Config:
        return self._config

    def config_changed(self, config: Config) -> None:
        self._config = config

    def deliver_async(self, reports: Sequence[ProblemReport]) -> None:
        self._queue.put(list(reports))

    def pending(self) -> int:
        """Number of report sets waiting for delivery."""
        return self._queue.qsize()

    def started(self) -> None:
        self.execute(self._deliver_loop, name="deliver")

    def stopped(self) -> None:
        self._queue.put(_STOP)

    def _deliver_loop(self) -> None:
        while not self.stopping.is_set():
            reports = self._queue.get()
            if reports is _STOP:
                return
            self.deliver(reports)

    def deliver(self, reports: Sequence[ProblemReport]) -> None:
        """Hand the reports to every sink synchronously, using the current config."""
        config = self._config
        for name, sink in self.sinks:
            try:
                sink(config, reports)
            except Exception:
                logger.error("Failed to deliver problem notification", sink=name, exc_info=True)

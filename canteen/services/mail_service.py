"""
Mail Service - delivers stock notification e-mails over SMTP
"""
import logging
import smtplib
import ssl
from email.message import EmailMessage
from html import escape
from typing import List, Protocol

from starlette.concurrency import run_in_threadpool

from canteen.schemas.settings import MailSettings
from canteen.schemas.stock import StockEmailPayload

logger = logging.getLogger(__name__)

SUBJECTS = {
    "expiring": "Stock Expiring Soon",
    "expired": "Expired Stock Alert",
    "low": "Low Stock Alert",
    "daily": "Daily Stock Report",
}

# (header, row attribute) per e-mail kind
COLUMNS = {
    "expiring": [
        ("Product", "product_name"), ("Balance", "balance"),
        ("Expire Date", "expire_date"), ("Days Left", "days_until_expiry"),
    ],
    "expired": [
        ("Product", "product_name"), ("Balance", "balance"),
        ("Expired Stock", "expired_stock"), ("Expire Date", "expire_date"),
    ],
    "low": [
        ("Product", "product_name"), ("Current Stock", "balance"),
        ("Predicted", "predicted_balance"), ("Alert Level", "low_stock_alert"),
        ("Warning", "warning_type"),
    ],
    "daily": [
        ("Product", "product_name"), ("Old Stock", "old_stock"),
        ("Invord Stock", "invord_stock"), ("Sales", "sales"),
        ("Damage", "damage_stock"), ("Expired", "expired_stock"),
        ("Balance", "balance"), ("Status", "status"),
    ],
}


class StockMailer(Protocol):
    async def send(self, payload: StockEmailPayload) -> bool:
        ...


def render_subject(payload: StockEmailPayload) -> str:
    return f"{SUBJECTS[payload.kind]} - {payload.theater.name}"


def _cell(row, attribute) -> str:
    value = getattr(row, attribute, None)
    return "-" if value is None else str(value)


def render_text(payload: StockEmailPayload) -> str:
    columns = COLUMNS[payload.kind]
    lines = [render_subject(payload), ""]
    for row in payload.rows:
        lines.append(" | ".join(f"{header}: {_cell(row, attr)}" for header, attr in columns))
    lines.append("")
    lines.append(f"{len(payload.rows)} product(s)")
    return "\n".join(lines)


def render_html(payload: StockEmailPayload) -> str:
    columns = COLUMNS[payload.kind]
    head = "".join(f"<th>{escape(header)}</th>" for header, _ in columns)
    body = "".join(
        "<tr>" + "".join(f"<td>{escape(_cell(row, attr))}</td>" for _, attr in columns) + "</tr>"
        for row in payload.rows
    )
    return (
        f"<h2>{escape(render_subject(payload))}</h2>"
        f"<table border=\"1\" cellpadding=\"4\" cellspacing=\"0\">"
        f"<thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"
    )


class SmtpStockMailer:
    """StockMailer backed by smtplib; reads MailSettings on every send"""

    def __init__(self, settings_service, timeout: float = 30.0):
        self.settings_service = settings_service
        self.timeout = timeout

    def _build_message(self, mail: MailSettings, payload: StockEmailPayload) -> EmailMessage:
        message = EmailMessage()
        sender = mail.from_email or mail.username
        message["Subject"] = render_subject(payload)
        message["From"] = f"{mail.from_name} <{sender}>"
        message["To"] = ", ".join(payload.recipients)
        message.set_content(render_text(payload))
        message.add_alternative(render_html(payload), subtype="html")
        return message

    def _send_sync(self, mail: MailSettings, message: EmailMessage, recipients: List[str]):
        password = mail.password.get_secret_value() if mail.password else None
        if mail.encryption == "ssl":
            client = smtplib.SMTP_SSL(mail.host, mail.port, timeout=self.timeout,
                                      context=ssl.create_default_context())
        else:
            client = smtplib.SMTP(mail.host, mail.port, timeout=self.timeout)
        with client:
            if mail.encryption == "tls":
                client.starttls(context=ssl.create_default_context())
            if mail.username and password:
                client.login(mail.username, password)
            client.send_message(message, to_addrs=recipients)

    async def send(self, payload: StockEmailPayload) -> bool:
        """Returns False (logged) instead of raising on delivery failure"""
        mail = await self.settings_service.get_mail()
        if not mail.is_configured:
            logger.warning(f"Mail settings incomplete; {payload.kind} e-mail for {payload.theater.name} not sent")
            return False

        message = self._build_message(mail, payload)
        try:
            await run_in_threadpool(self._send_sync, mail, message, payload.recipients)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP delivery of {payload.kind} e-mail to {payload.theater.name} failed: {e}")
            return False

        logger.info(
            f"Sent {payload.kind} e-mail for {payload.theater.name} "
            f"({len(payload.rows)} rows) to {len(payload.recipients)} recipient(s)"
        )
        return True

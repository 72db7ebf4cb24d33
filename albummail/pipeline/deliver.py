"""
Email delivery of photo batches.
Builds one message per batch and sends it over SMTP.
"""

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.mime.base import MIMEBase
from email.utils import formatdate, make_msgid
from email import encoders
from dataclasses import dataclass, field
from typing import List, Optional

from .batch import Attachment, Batch, batch_size_bytes

logger = logging.getLogger(__name__)

class SendError(Exception):
    """Raised when a batch could not be handed to the SMTP server."""

@dataclass
class RecipientTarget:
    address: str
    max_email_total_bytes: Optional[int]=None
    max_attachments_per_email: Optional[int]=None

@dataclass
class DelivererConfig:
    smtp_server: str
    port: int
    sender: str
    username: str
    password: str
    recipients: List[RecipientTarget]=field(default_factory=list)
    use_starttls: bool=True
    timeout_seconds: int=60
    max_email_total_bytes: int=24_000_000
    max_attachments_per_email: int=20
    subject: str="New photos for your frame"

    def limits_for(self, recipient: RecipientTarget) -> tuple[int, int]:
        """(max bytes, max attachments) for a recipient, falling back to the defaults."""
        return (
            recipient.max_email_total_bytes or self.max_email_total_bytes,
            recipient.max_attachments_per_email or self.max_attachments_per_email,
        )

def batch_subject(base: str, batch_index: int, total_batches: int) -> str:
    if total_batches > 1:
        return f"{base} (Batch {batch_index + 1} of {total_batches})"
    return base

def _size_mb(batch: Batch) -> str:
    return f"{batch_size_bytes(batch) / (1024 * 1024):.1f}"

def _mime_parts(attachment: Attachment) -> tuple[str, str]:
    if attachment.content_type and "/" in attachment.content_type:
        maintype, subtype = attachment.content_type.split("/", 1)
        return maintype, subtype
    if attachment.filename.lower().endswith(".png"):
        return "image", "png"
    return "image", "jpeg"

def build_message(recipient: str, subject: str, batch: Batch, config: DelivererConfig) -> MIMEMultipart:
    msg = MIMEMultipart()
    msg["From"] = config.sender
    msg["To"] = recipient
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid()

    body = f"Enjoy the latest photos! This email contains {len(batch)} images (~{_size_mb(batch)} MB)."
    msg.attach(MIMEText(body, "plain", "utf-8"))

    for attachment in batch:
        maintype, subtype = _mime_parts(attachment)
        part = MIMEBase(maintype, subtype)
        part.set_payload(attachment.content)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
        msg.attach(part)

    return msg

def _connect(config: DelivererConfig) -> smtplib.SMTP:
    if config.port == 465:
        server = smtplib.SMTP_SSL(config.smtp_server, config.port,
                                  context=ssl.create_default_context(), timeout=config.timeout_seconds)
    else:
        server = smtplib.SMTP(config.smtp_server, config.port, timeout=config.timeout_seconds)
    try:
        if config.port != 465 and config.use_starttls:
            server.starttls(context=ssl.create_default_context())
        if config.username and config.password:
            server.login(config.username, config.password)
    except (smtplib.SMTPException, OSError):
        server.close()
        raise
    return server

def check_login(config: DelivererConfig):
    """Connect and authenticate without sending anything."""
    server = _connect(config)
    try:
        server.noop()
    finally:
        server.quit()

def send_batch(recipient: str, batch: Batch, batch_index: int, total_batches: int,
               config: DelivererConfig, dry_run: bool=False):
    """Send one batch of attachments to one recipient."""
    if not batch:
        raise ValueError("Refusing to send an empty batch")

    subject = batch_subject(config.subject, batch_index, total_batches)

    if dry_run:
        logger.info(f"[DRY_RUN] Would send: {len(batch)} attachments, ~{_size_mb(batch)} MB, subject=\"{subject}\" to={recipient}")
        logger.debug(f"[DRY_RUN] Files: {', '.join(a.filename for a in batch)}")
        return

    msg = build_message(recipient, subject, batch, config)
    try:
        server = _connect(config)
        try:
            refused = server.sendmail(config.sender, [recipient], msg.as_string())
        finally:
            try:
                server.quit()
            except smtplib.SMTPException as e:
                logger.debug(f"Ignoring error while closing SMTP connection: {e}")
    except (smtplib.SMTPException, OSError) as e:
        raise SendError(f"Failed to send batch {batch_index + 1}/{total_batches} to {recipient}: {e}") from e

    if recipient in refused:
        raise SendError(f"Recipient {recipient} refused: {refused[recipient]}")

    logger.info(f"Sent batch {batch_index + 1}/{total_batches} to {recipient}: {len(batch)} files, ~{_size_mb(batch)} MB")

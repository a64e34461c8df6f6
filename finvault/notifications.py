"""
Operator notifications for backup outcomes.

The scheduler reports each run as a BackupEvent. Delivery is best effort:
a channel failure is logged and never propagates back into backup state.
"""

import json
import logging
import math
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

import requests


logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = 'success'
OUTCOME_FAILURE = 'failure'


@dataclass
class BackupEvent:
    """Structured outcome of a scheduled run"""

    outcome: str
    type: str
    backup_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def subject(self) -> str:
        if self.outcome == OUTCOME_SUCCESS:
            return f"finvault {self.type} completed successfully"
        return f"finvault {self.type} failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'outcome': self.outcome,
            'type': self.type,
            'backupId': self.backup_id,
            'details': self.details,
            'timestamp': self.timestamp.isoformat(),
        }


def format_bytes(size: Optional[int]) -> str:
    """Human readable byte count."""
    if not size:
        return '0 Bytes'
    units = ['Bytes', 'KB', 'MB', 'GB']
    index = min(int(math.log(size, 1024)), len(units) - 1)
    return f"{round(size / 1024 ** index, 2)} {units[index]}"


class NotificationChannel(ABC):
    """Delivery channel for backup events"""

    @abstractmethod
    def send(self, event: BackupEvent) -> bool:
        pass


class LogNotificationChannel(NotificationChannel):
    """Writes events to the application log (always enabled)"""

    def send(self, event: BackupEvent) -> bool:
        message = f"[BACKUP {event.outcome.upper()}] {event.subject}: {json.dumps(event.to_dict(), default=str)}"
        if event.outcome == OUTCOME_FAILURE:
            logger.error(message)
        else:
            logger.info(message)
        return True


class EmailNotificationChannel(NotificationChannel):
    """Sends events to operators over SMTP"""

    def __init__(self, smtp_host: str, smtp_port: int, username: str, password: str,
                 from_email: str, to_emails: List[str], use_tls: bool = True, timeout: int = 30):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.from_email = from_email
        self.to_emails = to_emails
        self.use_tls = use_tls
        self.timeout = timeout

    def _body(self, event: BackupEvent) -> str:
        lines = [event.subject, '']
        if event.backup_id:
            lines.append(f"Backup ID: {event.backup_id}")
        for key, value in event.details.items():
            if key == 'size':
                value = format_bytes(value)
            lines.append(f"{key}: {value}")
        lines += ['', f"Time: {event.timestamp.isoformat()} UTC"]
        return '\n'.join(lines)

    def send(self, event: BackupEvent) -> bool:
        try:
            msg = MIMEMultipart()
            msg['From'] = self.from_email
            msg['To'] = ', '.join(self.to_emails)
            msg['Subject'] = event.subject
            msg.attach(MIMEText(self._body(event), 'plain', 'utf-8'))

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                server.send_message(msg)

            return True

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send backup email notification: {e}")
            return False


class WebhookNotificationChannel(NotificationChannel):
    """POSTs events as JSON to an alerting webhook"""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def send(self, event: BackupEvent) -> bool:
        try:
            response = requests.post(self.url, json=event.to_dict(), timeout=self.timeout)
            if response.ok:
                return True
            logger.error(f"Backup webhook notification rejected: HTTP {response.status_code}")
            return False
        except requests.RequestException as e:
            logger.error(f"Failed to send backup webhook notification: {e}")
            return False


class Notifier:
    """Fans a backup event out to every configured channel"""

    def __init__(self, channels: List[NotificationChannel] = None):
        self.channels = channels if channels is not None else [LogNotificationChannel()]

    def add_channel(self, channel: NotificationChannel):
        self.channels.append(channel)

    def notify(self, event: BackupEvent) -> int:
        """
        Deliver an event. Never raises.

        Returns:
            Number of channels that accepted the event
        """
        delivered = 0
        for channel in self.channels:
            try:
                if channel.send(event):
                    delivered += 1
            except Exception as e:
                logger.error(f"Notification channel {channel.__class__.__name__} failed: {e}")
        return delivered


def build_notifier(config) -> Notifier:
    """
    Create a Notifier from Flask config.

    The log channel is always present; email and webhook channels are added
    when their settings are configured.
    """
    notifier = Notifier()

    webhook_url = config.get('BACKUP_NOTIFY_WEBHOOK_URL')
    if webhook_url:
        notifier.add_channel(WebhookNotificationChannel(webhook_url))
        logger.info("Webhook backup notifications enabled")

    smtp_host = config.get('SMTP_HOST')
    admin_emails = config.get('BACKUP_NOTIFY_EMAILS')
    if smtp_host and admin_emails:
        notifier.add_channel(EmailNotificationChannel(
            smtp_host=smtp_host,
            smtp_port=config.get('SMTP_PORT', 587),
            username=config.get('SMTP_USER'),
            password=config.get('SMTP_PASSWORD'),
            from_email=config.get('EMAIL_FROM') or config.get('SMTP_USER'),
            to_emails=[email.strip() for email in admin_emails.split(',') if email.strip()],
            use_tls=config.get('SMTP_USE_TLS', True)
        ))
        logger.info("Email backup notifications enabled")

    return notifier

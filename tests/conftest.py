"""
Pytest configuration and fixtures for all tests.
"""

import os
import sys
import pytest

# Add src to Python path before any imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

# Set up test environment variables before importing any modules
os.environ.setdefault('PHOENIX_API_KEY', 'test-api-key')
os.environ.setdefault('PHOENIX_WEBHOOK_URL', 'https://app.example.com/api/haraka/inbound')
os.environ.setdefault('REDIS_URL', 'redis://localhost:6379')
os.environ.setdefault('LOG_LEVEL', 'INFO')

from domain.config import WorkerConfig  # noqa: E402
from domain.models import QueueEntry  # noqa: E402


@pytest.fixture
def worker_config():
    """Valid configuration with fast retries."""
    return WorkerConfig(
        webhook_url='https://app.example.com/api/haraka/inbound',
        api_key='test-api-key',
        redis_url='redis://localhost:6379',
        retry_base_delay_seconds=0.0,
        stats_interval_seconds=0,
    )


@pytest.fixture
def sample_email_content():
    """Sample raw email content in MIME format."""
    return b"""From: Sender Name <sender@example.com>
To: recipient@yourdomain.com
Subject: Test Email Subject
Message-ID: <abc123@example.com>
MIME-Version: 1.0
Content-Type: multipart/alternative; boundary="boundary123"

--boundary123
Content-Type: text/plain; charset="UTF-8"

This is a test email body in plain text.

--boundary123
Content-Type: text/html; charset="UTF-8"

<html><body><p>This is a test email body in <strong>HTML</strong>.</p></body></html>

--boundary123--
"""


@pytest.fixture
def bounce_email_content():
    """A delivery status notification from a mailer daemon."""
    return b"""From: Mail Delivery System <MAILER-DAEMON@mx.example.net>
To: recipient@yourdomain.com
Subject: Undelivered Mail Returned to Sender
Content-Type: text/plain; charset="UTF-8"

This is the mail system at host mx.example.net.

Reporting-MTA: dns; mx.example.net
Final-Recipient: rfc822; nobody@example.org
Action: failed
Diagnostic-Code: smtp; 550 5.1.1 User unknown
"""


@pytest.fixture
def make_entry():
    """Factory for queue entries wrapping raw message bytes."""
    def _make(raw, **kwargs):
        kwargs.setdefault('rcpt_to', ['recipient@yourdomain.com'])
        kwargs.setdefault('mail_from', 'sender@example.com')
        kwargs.setdefault('message_id', 'msg-0001')
        return QueueEntry.build(raw, **kwargs)
    return _make

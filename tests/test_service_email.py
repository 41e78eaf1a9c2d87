"""
Tests for MIME decoding service.
"""

import pytest
import sys
import os
from unittest.mock import MagicMock, patch

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

from services import email
from services.email import (
    DetectedCharsetStrategy,
    MessageTooLargeError,
    MimeDecoder,
    NativeCharsetStrategy,
    ParseError,
    create_decoder,
)
from services.text import count_c1_controls, count_mojibake_pairs


@pytest.fixture
def decoder():
    """Decoder with both strategies, as configured by default."""
    return create_decoder()


class TestDecodeBodies:
    """Test body and attachment extraction from MIME content."""

    def test_decode_multipart_alternative_email(self, decoder, sample_email_content):
        """Test extracting text and HTML from multipart/alternative email."""
        result = decoder.decode(sample_email_content)

        assert 'plain text' in result.text_body
        assert '<strong>HTML</strong>' in result.html_body
        assert result.attachments == []
        assert result.subject == 'Test Email Subject'
        assert 'sender@example.com' in result.from_text
        assert result.to_text == 'recipient@yourdomain.com'

    def test_decode_simple_text_email(self, decoder):
        """Test extracting body from simple text-only email."""
        email_content = b"""From: sender@example.com
To: recipient@yourdomain.com
Subject: Simple Test
Content-Type: text/plain; charset="UTF-8"

Simple email body content.
This is line 2.
"""

        result = decoder.decode(email_content)

        assert 'Simple email body content' in result.text_body
        assert 'line 2' in result.text_body
        assert result.html_body == ''
        assert len(result.attachments) == 0

    def test_decode_simple_html_email(self, decoder):
        """Test extracting body from simple HTML-only email."""
        email_content = b"""From: sender@example.com
To: recipient@yourdomain.com
Subject: HTML Test
Content-Type: text/html; charset="UTF-8"

<html>
<body>
<h1>HTML Email</h1>
</body>
</html>
"""

        result = decoder.decode(email_content)

        assert result.text_body == ''
        assert '<h1>HTML Email</h1>' in result.html_body

    def test_decode_email_with_attachment(self, decoder):
        """Test extracting email with file attachment."""
        email_content = b"""From: sender@example.com
To: recipient@yourdomain.com
Subject: Email with Attachment
MIME-Version: 1.0
Content-Type: multipart/mixed; boundary="boundary456"

--boundary456
Content-Type: text/plain; charset="UTF-8"

Email body with attachment.

--boundary456
Content-Type: application/pdf; name="document.pdf"
Content-Disposition: attachment; filename="document.pdf"
Content-Transfer-Encoding: base64

JVBERi0xLjQKJeLjz9MKMSAwIG9iago8PC9UeXBlL0NhdGFsb2cvUGFnZXMgMiAwIFI+PgplbmRvYmoK

--boundary456--
"""

        result = decoder.decode(email_content)

        assert 'Email body with attachment' in result.text_body
        assert len(result.attachments) == 1
        attachment = result.attachments[0]
        assert attachment.filename == 'document.pdf'
        assert attachment.content_type == 'application/pdf'
        assert attachment.size > 0
        assert attachment.content.startswith(b'%PDF-1.4')
        assert attachment.index == 0

    def test_decode_email_with_multiple_attachments(self, decoder):
        """Test extracting email with multiple attachments in MIME order."""
        email_content = b"""From: sender@example.com
To: recipient@yourdomain.com
Subject: Multiple Attachments
MIME-Version: 1.0
Content-Type: multipart/mixed; boundary="boundary789"

--boundary789
Content-Type: text/plain; charset="UTF-8"

Email with two attachments.

--boundary789
Content-Type: image/png; name="image1.png"
Content-Disposition: attachment; filename="image1.png"
Content-Transfer-Encoding: base64

iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg==

--boundary789
Content-Type: text/csv; name="data.csv"
Content-Disposition: attachment; filename="data.csv"
Content-Transfer-Encoding: base64

TmFtZSxBZ2UKSm9obiwzMApKYW5lLDI1Cg==

--boundary789--
"""

        result = decoder.decode(email_content)

        assert 'two attachments' in result.text_body
        assert [a.filename for a in result.attachments] == ['image1.png', 'data.csv']
        assert [a.content_type for a in result.attachments] == ['image/png', 'text/csv']
        assert [a.index for a in result.attachments] == [0, 1]

    def test_decode_email_with_inline_image(self, decoder):
        """Test that inline images with a filename count as attachments."""
        email_content = b"""From: sender@example.com
To: recipient@yourdomain.com
Subject: Inline Image
MIME-Version: 1.0
Content-Type: multipart/related; boundary="boundaryABC"

--boundaryABC
Content-Type: text/html; charset="UTF-8"

<html><body><p>Email with inline image.</p><img src="cid:image1"></body></html>

--boundaryABC
Content-Type: image/png; name="image1.png"
Content-Disposition: inline; filename="image1.png"
Content-ID: <image1>
Content-Transfer-Encoding: base64

iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg==

--boundaryABC--
"""

        result = decoder.decode(email_content)

        assert 'inline image' in result.html_body
        assert len(result.attachments) == 1
        assert result.attachments[0].content_id == 'image1'

    def test_decode_email_quoted_printable(self, decoder):
        """Test extracting email with quoted-printable encoding."""
        email_content = b"""From: sender@example.com
To: recipient@yourdomain.com
Subject: Quoted-Printable Test
Content-Type: text/plain; charset="UTF-8"
Content-Transfer-Encoding: quoted-printable

This is a test with special characters: =C3=A9 =C3=A7 =C3=A0
"""

        result = decoder.decode(email_content)

        assert 'special characters: é ç à' in result.text_body

    def test_decode_email_base64_body(self, decoder):
        """Test extracting email with base64 encoded body."""
        email_content = b"""From: sender@example.com
To: recipient@yourdomain.com
Subject: Base64 Body
Content-Type: text/plain; charset="UTF-8"
Content-Transfer-Encoding: base64

VGhpcyBpcyBhIGJhc2U2NCBlbmNvZGVkIGVtYWlsIGJvZHku

"""

        result = decoder.decode(email_content)

        assert 'base64 encoded email body' in result.text_body

    def test_decode_email_unicode(self, decoder):
        """Test raw UTF-8 in headers and body."""
        email_content = """From: sender@example.com
To: recipient@yourdomain.com
Subject: Unicode Test: 你好 مرحبا שלום
Content-Type: text/plain; charset="UTF-8"
Content-Transfer-Encoding: 8bit

Email body with Unicode: 日本語 العربية עברית
""".encode('utf-8')

        result = decoder.decode(email_content)

        assert result.subject == 'Unicode Test: 你好 مرحبا שלום'
        assert '日本語' in result.text_body
        assert 'עברית' in result.text_body


class TestHeaders:
    """Test header decoding."""

    def test_repeated_headers_are_joined(self, decoder):
        """Test that repeated headers keep first casing and are comma-joined."""
        email_content = b"""Received: from a.example.com
received: from b.example.com
From: sender@example.com
Subject: Hops

Body
"""

        result = decoder.decode(email_content)

        assert result.headers['Received'] == 'from a.example.com, from b.example.com'
        assert 'received' not in result.headers

    def test_encoded_word_subject(self, decoder):
        """Test RFC 2047 subject decoding."""
        email_content = b"""From: =?UTF-8?B?w4lsb2TDrWU=?= <elodie@example.com>
Subject: =?UTF-8?Q?R=C3=A9sum=C3=A9_attached?=

Body
"""

        result = decoder.decode(email_content)

        assert result.subject == 'Résumé attached'
        assert result.from_text.startswith('Élodíe')

    def test_mislabelled_encoded_word_is_repaired(self, decoder):
        """Test UTF-8 bytes labelled as Latin-1 come out clean."""
        email_content = b"""From: =?ISO-8859-1?Q?Caf=C3=A9_Owner?= <owner@example.com>
Subject: =?ISO-8859-1?Q?Men=C3=BC_f=C3=BCr_heute?=

Body
"""

        result = decoder.decode(email_content)

        assert result.subject == 'Menü für heute'
        assert result.from_text.startswith('Café Owner')
        for value in (result.subject, result.from_text):
            assert count_c1_controls(value) == 0
            assert count_mojibake_pairs(value) == 0

    def test_mislabelled_body_uses_detected_strategy(self, decoder):
        """Test UTF-8 body declared as Latin-1."""
        email_content = """From: sender@example.com
Subject: Body charset
Content-Type: text/plain; charset="iso-8859-1"
Content-Transfer-Encoding: 8bit

Grüße aus München
""".encode('utf-8')

        result = decoder.decode(email_content)

        assert 'Grüße aus München' in result.text_body

    def test_raw_8bit_header_values_are_decoded(self, decoder):
        """Test raw UTF-8 bytes in an arbitrary header leave no escapes behind."""
        email_content = "X-Note: Grüße\nFrom: sender@example.com\nSubject: Plain\n\nBody\n".encode('utf-8')

        result = decoder.decode(email_content)

        assert result.headers['X-Note'] == 'Grüße'
        assert result.headers['X-Note'].encode('utf-8')

    def test_normalization_is_idempotent(self, decoder):
        """Test decoded fields are stable under a second normalization."""
        from services.text import normalize_header

        email_content = b"""From: =?ISO-8859-1?Q?Caf=C3=A9?= <owner@example.com>
Subject: =?ISO-8859-1?Q?Men=C3=BC?=

Body
"""

        result = decoder.decode(email_content)

        for value in (result.subject, result.from_text, result.text_body):
            assert normalize_header(value) == value


class TestDecoderErrors:
    """Test failure modes."""

    def test_oversized_message(self):
        """Test size limit enforcement before parsing."""
        decoder = create_decoder(max_bytes=64)

        with pytest.raises(MessageTooLargeError) as exc_info:
            decoder.decode(b'Subject: big\r\n\r\n' + b'x' * 100)

        assert exc_info.value.limit == 64
        assert isinstance(exc_info.value, ParseError)

    def test_empty_message(self, decoder):
        """Test that an empty message is rejected."""
        with pytest.raises(ParseError):
            decoder.decode(b'')

    def test_message_without_headers(self, decoder):
        """Test that input without header fields is rejected."""
        with pytest.raises(ParseError):
            decoder.decode(b'just some words without any header fields\n')

    def test_non_bytes_input(self, decoder):
        """Test that text input is rejected."""
        with pytest.raises(ParseError):
            decoder.decode('From: a@example.com\n\nbody')


class TestStrategies:
    """Test strategy selection."""

    def test_fallback_only_uses_detected_strategy(self):
        """Test the fallback-only configuration."""
        decoder = create_decoder(fallback_only=True)

        assert isinstance(decoder.primary, DetectedCharsetStrategy)
        assert decoder.fallback is None

    def test_default_uses_both_strategies(self):
        """Test the default configuration."""
        decoder = create_decoder()

        assert isinstance(decoder.primary, NativeCharsetStrategy)
        assert isinstance(decoder.fallback, DetectedCharsetStrategy)

    def test_clean_primary_result_skips_fallback(self, sample_email_content):
        """Test that a clean primary decode is used as is."""
        fallback = MagicMock()
        decoder = MimeDecoder(NativeCharsetStrategy(), fallback)

        result = decoder.decode(sample_email_content)

        assert result.subject == 'Test Email Subject'
        fallback.decode.assert_not_called()

    def test_detected_strategy_decodes_unknown_charset(self):
        """Test that an unknown declared charset does not break decoding."""
        email_content = b"""From: sender@example.com
Subject: Odd charset
Content-Type: text/plain; charset="x-no-such-charset"

Plain ascii body
"""

        result = create_decoder(fallback_only=True).decode(email_content)

        assert 'Plain ascii body' in result.text_body


class TestHelpers:
    """Test module helpers."""

    def test_decode_bytes_detected_prefers_utf8(self):
        """Test strict UTF-8 is tried first."""
        assert email.decode_bytes_detected('Café'.encode('utf-8'), 'iso-8859-1') == 'Café'

    @patch('services.email.chardet.detect', return_value={'encoding': None, 'confidence': 0.0})
    def test_decode_bytes_detected_falls_back(self, mock_detect):
        """Test non-UTF-8 bytes fall back to the declared charset."""
        assert email.decode_bytes_detected(b'Caf\xe9', 'iso-8859-1') == 'Café'

    def test_choose_best_subject(self):
        """Test that the header line wins only when strictly better."""
        assert email.choose_best_subject('CafÃ©\u0085', 'Café') == 'Café'
        assert email.choose_best_subject('Hello', 'Hello') == 'Hello'


if __name__ == '__main__':
    pytest.main([__file__, '-v'])

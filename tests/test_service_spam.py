"""
Tests for spam signal extraction.
"""

import json

import pytest

from services import spam


class TestExtract:
    """Test source priority and parsing."""

    def test_default_when_no_source(self):
        """Test the default verdict."""
        info = spam.extract(None, None, {})

        assert info.status == 'unknown'
        assert info.score == 0.0
        assert info.threshold == 5.0
        assert info.report is None
        assert info.status_header is None

    def test_transaction_notes_take_priority(self):
        """Test that transaction notes win over connection notes and headers."""
        info = spam.extract(
            {'spamassassin': {'score': 1.0, 'reqd': 5.0, 'flag': 'No'}},
            {'spamassassin': {'score': '7.5', 'reqd': '5.0', 'flag': 'Yes', 'tests': 'URIBL_BLACK,BAYES_99'}},
            {'X-Spam-Status': 'No, score=0.1 required=5.0'},
        )

        assert info.status == 'spam'
        assert info.score == 7.5
        assert info.threshold == 5.0
        assert info.report == 'URIBL_BLACK,BAYES_99'

    def test_connection_notes_used_next(self):
        """Test connection-scoped verdict."""
        info = spam.extract({'spamassassin': {'score': 2.0, 'reqd': 6.0, 'flag': 'No'}}, {}, {})

        assert info.status == 'ham'
        assert info.score == 2.0
        assert info.threshold == 6.0

    def test_garbage_numbers_fall_back(self):
        """Test unparseable score and threshold."""
        info = spam.extract({}, {'spamassassin': {'score': 'abc', 'reqd': 'n/a', 'flag': 'Yes'}}, {})

        assert info.score == 0.0
        assert info.threshold == 5.0
        assert info.status == 'spam'

    def test_headers_fallback(self):
        """Test parsing X-Spam-Status."""
        info = spam.extract({}, {}, {
            'x-spam-status': 'Yes, score=12.3 required=5.0 tests=HTML_MESSAGE',
            'X-Spam-Report': 'Content analysis details',
        })

        assert info.status == 'spam'
        assert info.score == 12.3
        assert info.threshold == 5.0
        assert info.report == 'Content analysis details'
        assert info.status_header.startswith('Yes')

    def test_spam_score_header_overrides(self):
        """Test X-Spam-Score overriding the status score."""
        info = spam.extract({}, {}, {'X-Spam-Status': 'No, score=1.0 required=5.0', 'X-Spam-Score': ' 2.5 '})

        assert info.status == 'ham'
        assert info.score == 2.5

    @pytest.mark.parametrize('value', ['inf', '-inf', '1e999', 'nan'])
    def test_non_finite_score_header_is_ignored(self, value):
        """Test a sender-supplied infinite score keeps the payload JSON-safe."""
        info = spam.extract({}, {}, {'X-Spam-Status': 'No, score=1.0 required=5.0', 'X-Spam-Score': value})

        assert info.score == 1.0
        json.dumps(info.to_dict(), allow_nan=False)

    def test_non_finite_note_score_falls_back(self):
        """Test infinite upstream verdict numbers."""
        info = spam.extract({}, {'spamassassin': {'score': 'inf', 'reqd': '-inf', 'flag': 'No'}}, {})

        assert info.score == 0.0
        assert info.threshold == 5.0

    def test_empty_note_is_ignored(self):
        """Test that an empty note falls through to headers."""
        info = spam.extract({}, {'spamassassin': {}}, {'X-Spam-Status': 'No, score=0.0 required=5.0'})

        assert info.status == 'ham'

    def test_to_dict(self):
        """Test serialization."""
        assert spam.SpamInfo().to_dict() == {
            'status': 'unknown',
            'score': 0.0,
            'threshold': 5.0,
            'report': None,
            'status_header': None,
        }


class TestIsSpam:
    """Test score comparison."""

    def test_is_spam(self):
        """Test threshold comparison is inclusive."""
        assert spam.is_spam(5.0) is True
        assert spam.is_spam(4.9) is False
        assert spam.is_spam(3.0, threshold=2.5) is True

"""
Service functions used by the worker.

This package contains the queue client, MIME decoding, text normalization
and the bounce, spam and attachment classifiers.
"""

__all__ = ['attachment', 'bounce', 'email', 'queue', 'spam', 'text']

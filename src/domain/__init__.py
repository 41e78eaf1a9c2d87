"""
Domain layer for inbound mail processing.

This layer contains:
- Configuration (environment-driven, validated before startup)
- Data models (queue entries, decoded messages, payloads, DLQ records)
- Business logic (per-message processing pipeline)
"""

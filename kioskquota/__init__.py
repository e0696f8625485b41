"""Account-level resource quotas: usage tracking, admission checks and helpers."""

__version__ = "0.1.0"
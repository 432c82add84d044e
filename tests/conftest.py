"""Pytest bootstrap configuration.

Ensure environment variables are set before test collection and module
imports that depend on application settings.
"""
import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
# keep orchestration retries fast in tests
os.environ.setdefault("PAYMENT__OPERATION__BACKOFF_BASE_MS", "1")
os.environ.setdefault("PAYMENT__OPERATION__BACKOFF_MAX_MS", "5")
os.environ.setdefault("PAYMENT__OPERATION__TIMEOUT_SECONDS", "2")

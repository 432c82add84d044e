"""Celery task infrastructure: the configured app and the maintenance beat schedule."""
from .config.celery import celery_app

__all__ = ["celery_app"]

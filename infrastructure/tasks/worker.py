"""Entry point for a worker that also runs the maintenance beat schedule.

Production deployments usually run ``celery -A infrastructure.tasks worker``
and ``celery -A infrastructure.tasks beat`` separately.
"""
from __future__ import annotations

from .config.celery import celery_app


def main() -> None:
    celery_app.worker_main(
        argv=["worker", "--beat", "--loglevel=INFO", "--hostname=payments@%h", "-Q", "default,maintenance"]
    )


if __name__ == "__main__":
    main()

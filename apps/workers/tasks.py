"""Celery tasks driving the session poll cycle."""

from __future__ import annotations

import logging

from celery import shared_task

from apps.workers.poller import get_session_poller

logger = logging.getLogger(__name__)


@shared_task
def poll_protocol_sessions() -> dict:
    """Run one reconciliation cycle; scheduled by beat when no in-process loop runs."""
    poller = get_session_poller()
    if poller.is_running:
        logger.info("session_poller.beat_skipped", extra={"reason": "loop_running"})
        return {"skipped": True}
    return poller.run_cycle().as_dict()

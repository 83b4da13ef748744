"""Background poller reconciling runtime sessions with protocols.

Each cycle lists the live sessions of every eligible instance, opens a
protocol for sessions seen for the first time, raises escalations announced by
the agent in hot sessions and finally applies survey ratings sent back by
contacts. Failures are contained to the smallest unit (session, survey,
instance) and logged.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Set

from django.apps import apps as django_apps
from django.conf import settings
from django.db import close_old_connections
from django.utils import timezone

from apps.dialog.detectors import detect_escalation, detect_survey_response
from apps.instances.models import Instance
from apps.protocols import services as protocol_services
from apps.protocols.models import Protocol, ProtocolStatus, SatisfactionSurvey
from apps.runtime.client import AgentRuntimeClient, RuntimeSession

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = int(getattr(settings, "SESSION_POLL_INTERVAL_SECONDS", 15))
PROTOCOL_CREATION_WINDOW = timedelta(hours=int(getattr(settings, "PROTOCOL_CREATION_WINDOW_HOURS", 24)))
ESCALATION_CHECK_WINDOW = timedelta(minutes=int(getattr(settings, "ESCALATION_CHECK_WINDOW_MINUTES", 5)))
ESCALATION_GUARD_TTL = timedelta(minutes=int(getattr(settings, "ESCALATION_GUARD_TTL_MINUTES", 30)))
SURVEY_CHECK_WINDOW = timedelta(minutes=int(getattr(settings, "SURVEY_CHECK_WINDOW_MINUTES", 60)))
DEFAULT_CHANNEL = getattr(settings, "PROTOCOL_DEFAULT_CHANNEL", "whatsapp")


class PollGuards:
    """Process-local dedup state shared by every cycle of one poller.

    ``escalations`` maps session id to the time this process escalated it and
    is pruned by age. ``surveys`` holds protocol ids whose rating was applied;
    answered surveys drop out of the sweep query, so it is never pruned.
    Both are cleared on restart.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.escalations: Dict[str, datetime] = {}
        self.surveys: Set[int] = set()

    def escalation_marked(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self.escalations

    def mark_escalation(self, session_id: str, at: datetime) -> None:
        with self._lock:
            self.escalations[session_id] = at

    def clear_escalation(self, session_id: str) -> None:
        with self._lock:
            self.escalations.pop(session_id, None)

    def prune_escalations(self, now: datetime, ttl: timedelta = ESCALATION_GUARD_TTL) -> int:
        with self._lock:
            expired = [key for key, at in self.escalations.items() if now - at > ttl]
            for key in expired:
                del self.escalations[key]
        return len(expired)

    def survey_processed(self, protocol_id: int) -> bool:
        with self._lock:
            return protocol_id in self.surveys

    def mark_survey(self, protocol_id: int) -> None:
        with self._lock:
            self.surveys.add(protocol_id)


@dataclass(slots=True)
class CycleReport:
    instances: int = 0
    sessions: int = 0
    protocols_created: int = 0
    escalations: int = 0
    surveys_answered: int = 0
    errors: int = 0
    started_at: datetime = field(default_factory=timezone.now)

    def as_dict(self) -> dict:
        payload = asdict(self)
        payload["started_at"] = self.started_at.isoformat()
        return payload


class SessionPoller:
    """Timer-driven poll loop. One cycle at a time per poller."""

    def __init__(
        self,
        runtime_client: AgentRuntimeClient | None = None,
        guards: PollGuards | None = None,
        interval: float | None = None,
    ) -> None:
        self.runtime_client = runtime_client or AgentRuntimeClient()
        self.guards = guards or PollGuards()
        self.interval = interval if interval is not None else POLL_INTERVAL_SECONDS
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._state_lock = threading.Lock()

    # ------------------------------------------------------------------ lifecycle
    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> bool:
        """Start the loop thread. Returns False if it is already running."""
        with self._state_lock:
            if self.is_running:
                return False
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run_forever,
                args=(self._stop_event,),
                name="session-poller",
                daemon=True,
            )
            self._thread.start()
        logger.info("session_poller.started", extra={"interval_seconds": self.interval})
        return True

    def stop(self) -> None:
        """Stop scheduling cycles; a cycle already running finishes on its own."""
        with self._state_lock:
            if self._thread is None:
                return
            self._stop_event.set()
            self._thread = None
        logger.info("session_poller.stopped")

    def _run_forever(self, stop_event: threading.Event) -> None:
        # First cycle after one full interval.
        while not stop_event.wait(self.interval):
            try:
                self.run_cycle()
            except Exception as exc:
                logger.error("session_poller.cycle_failed", extra={"error": str(exc)})
            finally:
                close_old_connections()

    # ------------------------------------------------------------------ cycle
    def run_cycle(self) -> CycleReport:
        report = CycleReport()
        now = timezone.now()
        try:
            instances = list(Instance.objects.eligible_for_polling())
        except Exception as exc:
            logger.error("session_poller.instances_failed", extra={"error": str(exc)})
            report.errors += 1
            instances = []

        for instance in instances:
            report.instances += 1
            self.poll_instance(instance, report, now=now)

        pruned = self.guards.prune_escalations(now)
        if pruned:
            logger.debug("session_poller.guards_pruned", extra={"pruned": pruned})

        self.check_pending_surveys(report)
        logger.info("session_poller.cycle_completed", extra=report.as_dict())
        return report

    def poll_instance(self, instance: Instance, report: CycleReport, *, now: datetime | None = None) -> None:
        now = now or timezone.now()
        try:
            sessions = self.runtime_client.list_sessions(instance.container_host, instance.container_name)
        except Exception as exc:
            report.errors += 1
            logger.error(
                "session_poller.poll_failed",
                extra={"instance_id": instance.id, "error": str(exc)},
            )
            return

        for session in sessions:
            report.sessions += 1
            try:
                self.process_session(instance, session, report, now=now)
            except Exception as exc:
                report.errors += 1
                logger.error(
                    "session_poller.session_failed",
                    extra={
                        "instance_id": instance.id,
                        "session_id": session.session_id,
                        "error": str(exc),
                    },
                )

    def process_session(
        self,
        instance: Instance,
        session: RuntimeSession,
        report: CycleReport,
        *,
        now: datetime,
    ) -> None:
        if session.updated_at is None or now - session.updated_at > PROTOCOL_CREATION_WINDOW:
            return

        protocol, created = protocol_services.find_or_create_for_session(
            instance_id=instance.id,
            session_id=session.session_id,
            contact_id=session.contact_id,
            channel=session.last_channel or DEFAULT_CHANNEL,
            contact_name=session.contact_name,
        )
        if created:
            report.protocols_created += 1

        # A human owns (or owned) this protocol; the agent's markers no longer apply.
        if protocol.human_engaged:
            return

        if now - session.updated_at > ESCALATION_CHECK_WINDOW:
            return

        session_key = session.session_id
        if self.guards.escalation_marked(session_key):
            if protocol.status == ProtocolStatus.ESCALATED:
                return
            if protocol.status == ProtocolStatus.ACTIVE:
                self.guards.clear_escalation(session_key)

        try:
            turns = self.runtime_client.get_session_messages(
                instance.container_host, instance.container_name, session.session_id
            )
            signal = detect_escalation(turns)
            if signal is None or protocol.status == ProtocolStatus.ESCALATED:
                return
            try:
                protocol_services.escalate_protocol(protocol.id, signal.reason)
            except protocol_services.ProtocolStateError:
                # Another cycle got there first.
                logger.info(
                    "session_poller.escalation_skipped",
                    extra={"protocol_id": protocol.id, "session_id": session_key},
                )
                return
            self.guards.mark_escalation(session_key, now)
            report.escalations += 1
            logger.info(
                "session_poller.escalation_detected",
                extra={
                    "protocol_id": protocol.id,
                    "protocol_number": protocol.number,
                    "reason": signal.reason,
                },
            )
        except Exception as exc:
            report.errors += 1
            logger.error(
                "session_poller.read_messages_failed",
                extra={
                    "instance_id": instance.id,
                    "session_id": session.session_id,
                    "error": str(exc),
                },
            )

    # ------------------------------------------------------------------ surveys
    def check_pending_surveys(self, report: CycleReport) -> None:
        cutoff = timezone.now() - SURVEY_CHECK_WINDOW
        try:
            pending = list(
                SatisfactionSurvey.objects.select_related("protocol", "protocol__instance").filter(
                    answered_at__isnull=True,
                    sent_at__gt=cutoff,
                )
            )
        except Exception as exc:
            report.errors += 1
            logger.error("session_poller.surveys_failed", extra={"error": str(exc)})
            return

        for survey in pending:
            if self.guards.survey_processed(survey.protocol_id):
                continue
            protocol: Protocol = survey.protocol
            instance = protocol.instance
            if not instance.has_container:
                continue
            try:
                turns = self.runtime_client.get_session_messages(
                    instance.container_host, instance.container_name, protocol.session_id
                )
                rating = detect_survey_response(turns)
                if rating is None:
                    continue
                protocol_services.answer_survey(protocol.id, rating)
                self.guards.mark_survey(protocol.id)
                report.surveys_answered += 1
                logger.info(
                    "session_poller.survey_response_detected",
                    extra={
                        "protocol_id": protocol.id,
                        "protocol_number": protocol.number,
                        "rating": rating,
                    },
                )
            except Exception as exc:
                report.errors += 1
                logger.error(
                    "session_poller.survey_check_failed",
                    extra={"protocol_id": protocol.id, "error": str(exc)},
                )


def get_session_poller() -> SessionPoller:
    """The poller owned by the workers app for this process."""
    return django_apps.get_app_config("workers").get_poller()


def start_session_poller() -> bool:
    return get_session_poller().start()


def stop_session_poller() -> None:
    get_session_poller().stop()

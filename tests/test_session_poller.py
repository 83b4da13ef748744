from datetime import timedelta

import pytest
from django.utils import timezone

from apps.instances.models import Instance, InstanceChannel
from apps.protocols import services
from apps.protocols.models import (
    AttendanceMode,
    Protocol,
    ProtocolAudit,
    ProtocolAuditAction,
    ProtocolStatus,
)
from apps.workers.poller import PollGuards, SessionPoller

pytestmark = pytest.mark.django_db

MARKER_TRANSCRIPT = [
    {"role": "user", "content": "I want to talk to a person"},
    {"role": "assistant", "content": "Sure. [ESCALAR: pedido de humano]"},
]


def _escalation_audits():
    return ProtocolAudit.objects.filter(action=ProtocolAuditAction.ESCALATED).count()


def test_new_session_opens_protocol(poller, runtime, instance, origin):
    runtime.add_session(instance, "sess-1", origin=origin, channel="telegram")

    report = poller.run_cycle()

    protocol = Protocol.objects.get(session_id="sess-1")
    assert protocol.contact_id == "+5511999990000"
    assert protocol.contact_name == "Maria"
    assert protocol.channel == "telegram"
    assert protocol.status == ProtocolStatus.ACTIVE
    assert report.instances == 1
    assert report.sessions == 1
    assert report.protocols_created == 1
    assert report.errors == 0


def test_contact_falls_back_to_session_key(poller, runtime, instance):
    runtime.add_session(instance, "sess-2", key="whatsapp:+5511888887777")

    poller.run_cycle()

    protocol = Protocol.objects.get(session_id="sess-2")
    assert protocol.contact_id == "+5511888887777"
    assert protocol.contact_name is None
    assert protocol.channel == "whatsapp"


def test_stale_sessions_are_not_backfilled(poller, runtime, instance):
    runtime.add_session(instance, "sess-old", age=timedelta(hours=25))

    report = poller.run_cycle()

    assert Protocol.objects.count() == 0
    assert report.protocols_created == 0


def test_warm_session_skips_transcript(poller, runtime, instance):
    runtime.add_session(instance, "sess-warm", age=timedelta(hours=2))
    runtime.set_transcript("sess-warm", MARKER_TRANSCRIPT)

    poller.run_cycle()

    protocol = Protocol.objects.get(session_id="sess-warm")
    assert protocol.status == ProtocolStatus.ACTIVE
    assert runtime.transcript_calls == []


def test_escalation_detected_once(poller, runtime, instance):
    runtime.add_session(instance, "sess-hot")
    runtime.set_transcript("sess-hot", MARKER_TRANSCRIPT)

    first = poller.run_cycle()
    second = poller.run_cycle()

    protocol = Protocol.objects.get(session_id="sess-hot")
    assert protocol.status == ProtocolStatus.ESCALATED
    assert protocol.escalation_reason == "pedido de humano"
    assert first.escalations == 1
    assert second.escalations == 0
    assert _escalation_audits() == 1
    assert poller.guards.escalation_marked("sess-hot")
    # The guard short-circuits before the second transcript fetch.
    assert runtime.transcript_calls == ["sess-hot"]


def test_fresh_guards_still_do_not_duplicate(runtime, instance):
    runtime.add_session(instance, "sess-hot")
    runtime.set_transcript("sess-hot", MARKER_TRANSCRIPT)
    SessionPoller(runtime_client=runtime, guards=PollGuards()).run_cycle()

    restarted = SessionPoller(runtime_client=runtime, guards=PollGuards())
    report = restarted.run_cycle()

    assert report.escalations == 0
    assert _escalation_audits() == 1


def test_human_owned_protocol_is_left_alone(poller, runtime, instance, attendant):
    runtime.add_session(instance, "sess-owned")
    protocol, _ = services.find_or_create_for_session(
        instance_id=instance.id, session_id="sess-owned", contact_id="c1", channel="whatsapp"
    )
    services.assign_protocol(protocol.id, attendant.id, AttendanceMode.MODE_B)
    runtime.set_transcript("sess-owned", MARKER_TRANSCRIPT)

    poller.run_cycle()

    protocol.refresh_from_db()
    assert protocol.status == ProtocolStatus.IN_PROGRESS
    assert protocol.mode == AttendanceMode.MODE_B
    assert protocol.escalation_reason is None
    assert _escalation_audits() == 0
    assert runtime.transcript_calls == []


def test_guard_cleared_after_return_to_ai(poller, runtime, instance, attendant):
    runtime.add_session(instance, "sess-back")
    runtime.set_transcript("sess-back", MARKER_TRANSCRIPT)
    poller.run_cycle()

    protocol = Protocol.objects.get(session_id="sess-back")
    services.assign_protocol(protocol.id, attendant.id)
    services.change_mode(protocol.id, AttendanceMode.AI_ONLY, attendant.id)
    runtime.set_transcript(
        "sess-back",
        MARKER_TRANSCRIPT + [{"role": "assistant", "content": "[ESCALAR: voltou a reclamar]"}],
    )

    report = poller.run_cycle()

    protocol.refresh_from_db()
    assert report.escalations == 1
    assert protocol.status == ProtocolStatus.ESCALATED
    assert protocol.escalation_reason == "voltou a reclamar"
    assert _escalation_audits() == 2


def test_session_failure_is_isolated(poller, runtime, instance):
    runtime.add_session(instance, "sess-broken")
    runtime.add_session(instance, "sess-ok")
    runtime.failing_sessions.add("sess-broken")
    runtime.set_transcript("sess-ok", MARKER_TRANSCRIPT)

    report = poller.run_cycle()

    assert report.errors == 1
    assert Protocol.objects.get(session_id="sess-ok").status == ProtocolStatus.ESCALATED
    assert Protocol.objects.get(session_id="sess-broken").status == ProtocolStatus.ACTIVE


def test_unreachable_instance_does_not_stop_others(poller, runtime, instance):
    down = Instance.objects.create(
        name="Sales Bot", slug="sales-bot", container_host="10.0.0.99", container_name="agent-sales"
    )
    InstanceChannel.objects.create(instance=down, channel="whatsapp")
    runtime.unreachable_hosts.add("10.0.0.99")
    runtime.add_session(instance, "sess-1")

    report = poller.run_cycle()

    assert report.instances == 2
    assert report.errors == 1
    assert Protocol.objects.filter(instance=instance).count() == 1


def test_ineligible_instances_are_skipped(poller, runtime, instance):
    no_container = Instance.objects.create(name="Draft", slug="draft")
    InstanceChannel.objects.create(instance=no_container, channel="whatsapp")
    inactive = Instance.objects.create(
        name="Paused", slug="paused", container_host="10.0.0.13", container_name="agent-paused"
    )
    InstanceChannel.objects.create(instance=inactive, channel="whatsapp", is_active=False)
    runtime.add_session(inactive, "sess-paused")

    report = poller.run_cycle()

    assert report.instances == 1
    assert not Protocol.objects.filter(session_id="sess-paused").exists()


def test_guards_are_pruned_by_age():
    guards = PollGuards()
    now = timezone.now()
    guards.mark_escalation("old", now - timedelta(minutes=31))
    guards.mark_escalation("recent", now - timedelta(minutes=5))

    assert guards.prune_escalations(now) == 1
    assert not guards.escalation_marked("old")
    assert guards.escalation_marked("recent")


def test_start_is_idempotent_and_stop_halts(runtime):
    poller = SessionPoller(runtime_client=runtime, interval=3600)

    assert poller.start() is True
    assert poller.start() is False
    assert poller.is_running

    poller.stop()
    assert not poller.is_running
    poller.stop()

    assert poller.start() is True
    poller.stop()


def test_beat_task_runs_one_cycle(monkeypatch, poller, runtime, instance):
    from apps.workers.tasks import poll_protocol_sessions

    runtime.add_session(instance, "sess-beat")
    monkeypatch.setattr("apps.workers.tasks.get_session_poller", lambda: poller)

    result = poll_protocol_sessions.run()

    assert result["protocols_created"] == 1
    assert Protocol.objects.filter(session_id="sess-beat").exists()

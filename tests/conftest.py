from datetime import timedelta

import pytest
from django.contrib.auth.models import User
from django.utils import timezone

from apps.instances.models import Instance, InstanceChannel
from apps.runtime.client import RuntimeSession, SessionOrigin
from apps.runtime.transcript import build_turns
from apps.workers.poller import PollGuards, SessionPoller


class FakeRuntimeClient:
    """In-memory stand-in for the agent runtime gateway."""

    def __init__(self):
        self.sessions = {}
        self.transcripts = {}
        self.failing_sessions = set()
        self.unreachable_hosts = set()
        self.transcript_calls = []

    def add_session(self, instance, session_id, *, key=None, age=timedelta(seconds=30), origin=None, channel=None):
        session = RuntimeSession(
            key=key or f"whatsapp:{session_id}",
            session_id=session_id,
            updated_at=timezone.now() - age,
            last_channel=channel,
            origin=origin,
        )
        self.sessions.setdefault((instance.container_host, instance.container_name), []).append(session)
        return session

    def set_transcript(self, session_id, raw_turns):
        self.transcripts[session_id] = build_turns(raw_turns)

    def list_sessions(self, host, container):
        if host in self.unreachable_hosts:
            raise ConnectionError(f"{host} unreachable")
        return list(self.sessions.get((host, container), []))

    def get_session_messages(self, host, container, session_id):
        self.transcript_calls.append(session_id)
        if session_id in self.failing_sessions:
            raise TimeoutError(f"transcript for {session_id} timed out")
        return list(self.transcripts.get(session_id, []))


@pytest.fixture
def instance(db):
    instance = Instance.objects.create(
        name="Support Bot",
        slug="support-bot",
        container_host="10.0.0.12",
        container_name="agent-support",
    )
    InstanceChannel.objects.create(instance=instance, channel="whatsapp", is_active=True)
    return instance


@pytest.fixture
def attendant(db):
    return User.objects.create_user(
        username="ana@example.com",
        email="ana@example.com",
        password="secret",
        first_name="Ana",
        last_name="Souza",
    )


@pytest.fixture
def runtime():
    return FakeRuntimeClient()


@pytest.fixture
def poller(runtime):
    return SessionPoller(runtime_client=runtime, guards=PollGuards(), interval=3600)


@pytest.fixture
def origin():
    return SessionOrigin(from_id="+5511999990000", label="Maria")

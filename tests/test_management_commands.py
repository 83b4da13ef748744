import json
from io import StringIO

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError

from apps.instances.models import Instance, InstanceChannel
from apps.protocols.models import Protocol

pytestmark = pytest.mark.django_db

SEED = """
instances:
  - slug: support-bot
    name: Support Bot
    container_host: 10.0.0.12
    container_name: agent-support
    channels:
      - whatsapp
      - channel: telegram
        is_active: false
  - name: missing slug
"""


def test_seed_instances_is_repeatable(tmp_path):
    seed_file = tmp_path / "instances.yaml"
    seed_file.write_text(SEED, encoding="utf-8")

    call_command("seed_instances", file=str(seed_file), stdout=StringIO(), stderr=StringIO())
    call_command("seed_instances", file=str(seed_file), stdout=StringIO(), stderr=StringIO())

    instance = Instance.objects.get(slug="support-bot")
    assert instance.has_container
    assert InstanceChannel.objects.filter(instance=instance).count() == 2
    assert list(Instance.objects.eligible_for_polling()) == [instance]
    assert not InstanceChannel.objects.get(instance=instance, channel="telegram").is_active


def test_seed_instances_missing_file(tmp_path):
    with pytest.raises(CommandError):
        call_command("seed_instances", file=str(tmp_path / "nope.yaml"))


def test_run_session_poller_once(monkeypatch, poller, runtime, instance):
    runtime.add_session(instance, "sess-cli")
    monkeypatch.setattr(
        "apps.workers.management.commands.run_session_poller.get_session_poller",
        lambda: poller,
    )
    out = StringIO()

    call_command("run_session_poller", once=True, stdout=out)

    report = json.loads(out.getvalue())
    assert report["protocols_created"] == 1
    assert Protocol.objects.filter(session_id="sess-cli").exists()

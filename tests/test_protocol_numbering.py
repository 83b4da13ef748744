from datetime import datetime, timezone as dt_timezone

import pytest

from apps.protocols.models import ProtocolSequence
from apps.protocols.services import format_protocol_number, generate_protocol_number

pytestmark = pytest.mark.django_db


def _at(year):
    return datetime(year, 6, 1, 12, 0, tzinfo=dt_timezone.utc)


def test_format_zero_pads_sequence():
    assert format_protocol_number(2025, 42) == "CPR-2025-000042"


def test_sequential_numbers_have_no_gaps():
    numbers = [generate_protocol_number(now=_at(2025)) for _ in range(5)]
    assert numbers == [f"CPR-2025-{n:06d}" for n in range(1, 6)]
    sequence = ProtocolSequence.objects.get(pk=ProtocolSequence.SINGLETON_ID)
    assert sequence.year == 2025
    assert sequence.last_number == 5


def test_year_rollover_restarts_counter():
    generate_protocol_number(now=_at(2025))
    generate_protocol_number(now=_at(2025))

    assert generate_protocol_number(now=_at(2026)) == "CPR-2026-000001"
    assert generate_protocol_number(now=_at(2026)) == "CPR-2026-000002"
    assert ProtocolSequence.objects.count() == 1


def test_prefix_is_configurable(monkeypatch):
    monkeypatch.setattr("apps.protocols.services.PROTOCOL_NUMBER_PREFIX", "SUP")
    assert generate_protocol_number(now=_at(2025)) == "SUP-2025-000001"

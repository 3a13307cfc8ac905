"""
Shared fixtures: a small member sheet, an in-memory record store and a
scripted classification backend.
"""

from datetime import datetime
from typing import List

import pytest

from membership.records import MembershipRecord
from tests.fakes import NOW, FakeStore, ScriptedBackend

@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def records() -> List[MembershipRecord]:
    return [
        MembershipRecord(
            member_id="A",
            first_name="Asha",
            last_name="Rao",
            email="asha@example.com",
            membership_name="Studio 12 Pack",
            location="Bandra",
            end_date="2025-01-05",
            paid="12,000",
            status="Active",
            sessions_left=2.0,
            comments="Knee injury, paused for now",
        ),
        MembershipRecord(
            member_id="B",
            first_name="Bilal",
            last_name="Khan",
            email="bilal@example.com",
            membership_name="Studio 8 Pack",
            location="Kemps Corner",
            end_date="2025-01-05",
            paid="4500",
            status="Churned",
            sessions_left=0.0,
        ),
        MembershipRecord(
            member_id="C",
            first_name="Chitra",
            last_name="Iyer",
            email="chitra@example.com",
            membership_name="Studio Annual",
            location="Bandra",
            end_date="2025-03-15",
            paid="60000",
            status="Active",
            sessions_left=40.0,
            notes="Thinks the price is too high",
            tags=("VIP",),
        ),
        MembershipRecord(
            member_id="D",
            first_name="Dev",
            last_name="Shah",
            email="dev@example.com",
            membership_name="Studio 8 Pack",
            location="Kemps Corner",
            end_date="2024-12-20",
            paid="",
            status="Frozen",
        ),
        MembershipRecord(
            member_id="E",
            first_name="Esha",
            last_name="Menon",
            email="esha@example.com",
            membership_name="Studio 12 Pack",
            location="Bandra",
            end_date="not a date",
            paid="8000",
            status="Active",
            sessions_left=5.0,
        ),
    ]


@pytest.fixture
def fake_store(records) -> FakeStore:
    return FakeStore(records)


@pytest.fixture
def scripted_backend():
    def make(*answers, delay: float = 0.0) -> ScriptedBackend:
        return ScriptedBackend(*answers, delay=delay)

    return make



"""
Tests for membership level resolution and membership CRUD.
"""

from datetime import date

import pytest

from services.crm_sync.memberships import MembershipManager, add_one_year
from services.crm_sync.models import MembershipRecord


@pytest.fixture
def manager(client, taxonomy):
    return MembershipManager(client, level_ids={"Household": 51})


class TestResolveLevel:

    def test_id_first(self, manager):
        assert manager.resolve_level(level_id=50, label="Family") == {"id": 50, "name": "Individual"}

    def test_unknown_id_still_used(self, manager):
        assert manager.resolve_level(level_id=99, label="Legacy") == {"id": 99, "name": "Legacy"}

    def test_name_case_insensitive(self, manager):
        assert manager.resolve_level(label="  family ") == {"id": 51, "name": "Family"}

    def test_configured_mapping(self, manager):
        assert manager.resolve_level(label="household") == {"id": 51, "name": "Family"}

    def test_unresolved(self, manager):
        assert manager.resolve_level(label="Platinum") is None
        assert manager.resolve_level() is None

    def test_levels_cached(self, manager, crm):
        manager.resolve_level(label="Family")
        manager.resolve_level(label="Individual")
        assert len(crm.calls_to("GET", "membership_levels")) == 1


class TestMembershipCrud:

    def test_add_defaults_end_date(self, manager, crm):
        cid = crm.add_constituent("Alice", "Ng")
        record = MembershipRecord(level_id=50, level_name="Individual", start_date=date(2025, 3, 1))

        response = manager.add(cid, record)

        assert response.success
        stored = crm.list(cid, "memberships")[0]
        assert stored["date_start"] == "2025-03-01"
        assert stored["finish_date"] == "2026-03-01"
        assert stored["membership_level_id"] == 50

    def test_update_uses_direct_endpoint(self, manager, crm):
        cid = crm.add_constituent("Alice", "Ng")
        mid = crm.add_record(cid, "memberships", {"membership_level_id": 50, "date_start": "2024-03-01"})
        record = MembershipRecord(level_id=51, level_name="Family", start_date=date(2025, 3, 1),
                                  end_date=date(2026, 2, 28))

        response = manager.update(cid, mid, record)

        assert response.success
        assert [c.path for c in crm.writes()] == [f"memberships/{mid}"]
        assert crm.list(cid, "memberships")[0]["membership_level_id"] == 51

    def test_deactivate_sets_finish_date(self, manager, crm):
        cid = crm.add_constituent("Alice", "Ng")
        mid = crm.add_record(cid, "memberships", {"membership_level_id": 50, "date_start": "2024-03-01"})

        manager.deactivate(cid, mid, end_date=date(2025, 1, 31), note="Cancelled")

        stored = crm.list(cid, "memberships")[0]
        assert stored["finish_date"] == "2025-01-31"
        assert stored["note"] == "Cancelled"
        assert len(crm.list(cid, "memberships")) == 1

    def test_list(self, manager, crm):
        cid = crm.add_constituent("Alice", "Ng")
        crm.add_record(cid, "memberships", {
            "membership_level_id": 50,
            "membership_level_name": "Individual",
            "date_start": "2024-03-01",
            "finish_date": "2025-03-01T00:00:00Z",
        })

        memberships = manager.list(cid)

        assert memberships[0].level_name == "Individual"
        assert memberships[0].start_date == date(2024, 3, 1)
        assert memberships[0].end_date == date(2025, 3, 1)

    def test_add_invalidates_cached_list(self, manager, crm):
        cid = crm.add_constituent("Alice", "Ng")
        assert manager.list(cid) == []

        manager.add(cid, MembershipRecord(level_id=50, level_name="Individual", start_date=date(2025, 3, 1)))

        assert len(manager.list(cid)) == 1


class TestRenewal:

    @pytest.fixture
    def member(self, crm):
        cid = crm.add_constituent("Alice", "Ng")
        crm.add_record(cid, "memberships", {
            "membership_level_id": 50,
            "membership_level_name": "Individual",
            "date_start": "2024-03-01",
            "finish_date": "2025-03-01",
            "note": "Order 1",
        })
        crm.add_record(cid, "memberships", {
            "membership_level_id": 50,
            "membership_level_name": "Individual",
            "date_start": "2022-01-01",
            "finish_date": "2023-01-01",
        })
        crm.reset_calls()
        return cid

    def test_active_excludes_expired(self, manager, member):
        active = manager.active(member, today=date(2025, 2, 1))
        assert [m.start_date for m in active] == [date(2024, 3, 1)]

    def test_deactivate_active_sends_full_record(self, manager, member, crm):
        current, expired = crm.list(member, "memberships")

        responses = manager.deactivate_active(member, today=date(2025, 2, 1))

        assert [r.success for r in responses] == [True]
        assert [c.path for c in crm.writes()] == [f"memberships/{current['id']}"]
        assert crm.writes()[0].body == {
            "membership_level_id": 50,
            "membership_level_name": "Individual",
            "date_start": "2024-03-01",
            "finish_date": "2025-02-01",
            "note": "Membership ended by renewal on 2025-02-01",
        }
        assert expired["finish_date"] == "2023-01-01"

    def test_deactivate_active_continues_after_failure(self, manager, crm):
        cid = crm.add_constituent("Alice", "Ng")
        first = crm.add_record(cid, "memberships", {"membership_level_id": 50, "date_start": "2025-01-01"})
        crm.add_record(cid, "memberships", {"membership_level_id": 51, "date_start": "2025-01-01"})
        crm.fail("PUT", f"memberships/{first}", status=500)

        responses = manager.deactivate_active(cid, today=date(2025, 2, 1))

        assert [r.success for r in responses] == [False, True]
        assert crm.list(cid, "memberships")[1]["finish_date"] == "2025-02-01"

    def test_renew_unresolved_level_writes_nothing(self, manager, member, crm):
        assert manager.renew(member, label="Platinum", start_date=date(2025, 2, 1)) is None
        assert crm.writes() == []

    def test_renew_ends_active_then_adds(self, manager, member, crm):
        renewal = manager.renew(member, label="Family", start_date=date(2025, 2, 1), note="Order 2")

        assert renewal.success
        assert (renewal.level_id, renewal.level_name) == (51, "Family")
        assert [c.method for c in crm.writes()] == ["PUT", "POST"]
        added = crm.list(member, "memberships")[-1]
        assert (added["membership_level_id"], added["date_start"], added["finish_date"]) == (
            51, "2025-02-01", "2026-02-01",
        )
        assert [m.level_id for m in manager.active(member, today=date(2025, 2, 2))] == [51]

    def test_renew_same_level_and_start_is_noop(self, manager, member, crm):
        manager.renew(member, level_id=51, start_date=date(2025, 2, 1))
        crm.reset_calls()

        renewal = manager.renew(member, level_id=51, start_date=date(2025, 2, 1))

        assert renewal.already_current
        assert crm.writes() == []


def test_add_one_year_leap_day():
    assert add_one_year(date(2024, 2, 29)) == date(2025, 2, 28)
    assert add_one_year(date(2025, 6, 15)) == date(2026, 6, 15)

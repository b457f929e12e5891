"""Tests for the deal activity log.

Covers:
- Manual logging (types, subject required, engine types reserved)
- Newest-first listing, restartable iteration, empty history
- last_activity_at refresh on manual logging
- record_activity validation for stage_change entries
"""

from datetime import datetime, timedelta, timezone

import pytest

from dealflow.extensions import db
from dealflow.models.deal import Deal
from dealflow.models.deal_activity import DealActivity
from dealflow.services import activity_service, deal_service
from dealflow.services.errors import NotFoundError, ValidationError


def _make_deal(title="Acme LED"):
    return deal_service.create_deal({"title": title, "value": 5000})


class TestAppendActivity:

    @pytest.mark.parametrize("activity_type", DealActivity.MANUAL_TYPES)
    def test_manual_types_accepted(self, stages, activity_type):
        deal = _make_deal()
        activity = activity_service.append_activity(
            deal.id, activity_type, "Followed up", description="Left voicemail",
            actor_id="user-9",
        )
        assert activity.activity_type == activity_type
        assert activity.subject == "Followed up"
        assert activity.description == "Left voicemail"
        assert activity.created_by == "user-9"
        assert activity.created_at is not None

    @pytest.mark.parametrize("activity_type", DealActivity.SYSTEM_TYPES)
    def test_engine_types_reserved(self, stages, activity_type):
        deal = _make_deal()
        with pytest.raises(ValidationError, match="recorded automatically"):
            activity_service.append_activity(deal.id, activity_type, "Sneaky")
        assert deal.activities.count() == 1

    def test_unknown_type_rejected(self, stages):
        deal = _make_deal()
        with pytest.raises(ValidationError, match="Invalid activity type"):
            activity_service.append_activity(deal.id, "fax", "Sent a fax")

    def test_blank_subject_rejected(self, stages):
        deal = _make_deal()
        with pytest.raises(ValidationError, match="subject is required"):
            activity_service.append_activity(deal.id, "note", "  ")
        assert deal.activities.count() == 1

    def test_unknown_deal(self, stages):
        with pytest.raises(NotFoundError):
            activity_service.append_activity("missing", "note", "Hello")

    def test_subject_is_sanitized(self, stages):
        deal = _make_deal()
        activity = activity_service.append_activity(
            deal.id, "note", "<script>x</script>Called back",
        )
        assert "<script>" not in activity.subject
        assert "Called back" in activity.subject

    def test_refreshes_last_activity(self, stages):
        deal = _make_deal()
        old = datetime.now(timezone.utc) - timedelta(days=20)
        deal.last_activity_at = old
        db.session.commit()

        activity_service.append_activity(deal.id, "call", "Check-in call")
        refreshed = activity_service.as_utc(db.session.get(Deal, deal.id).last_activity_at)
        assert refreshed > old + timedelta(days=19)

    def test_allowed_on_closed_deal(self, stages):
        deal = _make_deal()
        deal_service.close_won(deal.id)
        activity_service.append_activity(deal.id, "email", "Sent thank-you")
        assert deal.activities.count() == 3


class TestListForDeal:

    def test_newest_first(self, stages):
        deal = _make_deal()
        activity_service.append_activity(deal.id, "note", "First note")
        activity_service.append_activity(deal.id, "call", "Second call")
        subjects = [a.subject for a in activity_service.list_for_deal(deal.id)]
        assert subjects[0] == "Second call"
        assert subjects[1] == "First note"
        assert subjects[-1].startswith("Deal created")

    def test_sequence_is_per_deal(self, stages):
        one = _make_deal("One")
        two = _make_deal("Two")
        activity_service.append_activity(one.id, "note", "n1")
        activity_service.append_activity(two.id, "note", "n2")
        assert [a.sequence for a in activity_service.list_for_deal(one.id)] == [2, 1]
        assert [a.sequence for a in activity_service.list_for_deal(two.id)] == [2, 1]

    def test_restartable(self, stages):
        deal = _make_deal()
        activity_service.append_activity(deal.id, "task", "Send quote")
        history = activity_service.list_for_deal(deal.id)
        first_pass = [a.id for a in history]
        second_pass = [a.id for a in history]
        assert first_pass == second_pass
        assert len(first_pass) == 2

    def test_reflects_later_appends(self, stages):
        deal = _make_deal()
        history = activity_service.list_for_deal(deal.id)
        assert len(list(history)) == 1
        activity_service.append_activity(deal.id, "meeting", "Site walk")
        assert len(list(history)) == 2

    def test_empty_for_unknown_deal(self, stages):
        assert list(activity_service.list_for_deal("no-such-deal")) == []


class TestRecordActivity:

    def test_stage_change_needs_both_stages(self, stages):
        deal = _make_deal()
        with pytest.raises(ValidationError, match="from_stage_id and to_stage_id"):
            activity_service.record_activity(
                deal, "stage_change", "Moved", from_stage_id=stages["a"],
            )
        db.session.rollback()
        assert deal.activities.count() == 1

    def test_stage_change_with_both_stages(self, stages):
        deal = _make_deal()
        activity = activity_service.record_activity(
            deal, "stage_change", "Moved",
            from_stage_id=stages["a"], to_stage_id=stages["b"],
        )
        db.session.commit()
        assert activity.sequence == 2
        assert activity.to_stage_id == stages["b"]


class TestActivityTypes:

    def test_manual_and_system_types_partition_all_types(self):
        assert set(DealActivity.MANUAL_TYPES) | set(DealActivity.SYSTEM_TYPES) == set(
            DealActivity.TYPES
        )
        assert not set(DealActivity.MANUAL_TYPES) & set(DealActivity.SYSTEM_TYPES)
        assert DealActivity.MANUAL_TYPES == ["note", "call", "email", "meeting", "task"]

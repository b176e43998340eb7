from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from app.database import as_utc
from app.models import Organization
from app.services import usage_service
from app.services.plans import MB, PLAN_LIMITS, get_limits, normalize_period
from app.services.tenant_service import sentinel_org
from app.services.usage_service import Cap, Feature, Resource, check_and_consume, record, release_storage
from tests.conftest import FIXED_NOW


def _db_error():
    return OperationalError("UPDATE organizations", {}, Exception("deadlock"))


class TestCheckAndConsume:
    def test_denial_leaves_counter_unchanged(self, sqlite_db, make_org):
        org = make_org(ai_chats_today=10, ai_chats_reset_at=FIXED_NOW)

        decision = check_and_consume(sqlite_db, Resource.AI_CHAT, org, now=FIXED_NOW + timedelta(hours=1))
        sqlite_db.commit()
        sqlite_db.refresh(org)

        assert decision.allowed is False
        assert "10" in decision.message
        assert org.ai_chats_today == 10
        assert as_utc(org.ai_chats_reset_at) == FIXED_NOW

    @pytest.mark.parametrize("previous_count", [0, 9, 10, 5000])
    def test_new_day_resets_counter_regardless_of_size(self, sqlite_db, make_org, previous_count):
        org = make_org(ai_chats_today=previous_count, ai_chats_reset_at=FIXED_NOW - timedelta(days=1))

        decision = check_and_consume(sqlite_db, Resource.AI_CHAT, org, now=FIXED_NOW)
        sqlite_db.commit()
        sqlite_db.refresh(org)

        assert decision.allowed is True
        assert org.ai_chats_today == 0
        assert as_utc(org.ai_chats_reset_at) == FIXED_NOW

    def test_under_limit_allowed_without_write(self, sqlite_db, make_org):
        org = make_org(ai_chats_today=3, ai_chats_reset_at=FIXED_NOW)

        decision = check_and_consume(sqlite_db, Resource.AI_CHAT, org, now=FIXED_NOW)
        sqlite_db.refresh(org)

        assert decision.allowed is True
        assert org.ai_chats_today == 3

    def test_new_month_resets_task_counter(self, sqlite_db, make_org):
        last_month = datetime(2026, 9, 15, 3, 0, tzinfo=timezone.utc)
        org = make_org(tasks_this_month=5, tasks_reset_at=last_month)

        decision = check_and_consume(sqlite_db, Resource.TASK, org, now=FIXED_NOW)
        sqlite_db.commit()
        sqlite_db.refresh(org)

        assert decision.allowed is True
        assert org.tasks_this_month == 0

    def test_same_month_task_limit_denied(self, sqlite_db, make_org):
        org = make_org(tasks_this_month=5, tasks_reset_at=FIXED_NOW - timedelta(days=10))

        decision = check_and_consume(sqlite_db, Resource.TASK, org, now=FIXED_NOW)

        assert decision.allowed is False
        assert "5 งาน" in decision.message

    def test_storage_compares_used_plus_incoming(self, sqlite_db, make_org):
        limit = PLAN_LIMITS["free"].storage_bytes
        org = make_org(storage_used_bytes=limit - 100)

        assert check_and_consume(sqlite_db, Resource.STORAGE, org, amount=100).allowed is True
        assert check_and_consume(sqlite_db, Resource.STORAGE, org, amount=101).allowed is False

    def test_persistence_error_fails_open(self, db_session):
        db_session.query.side_effect = _db_error()

        decision = check_and_consume(db_session, Resource.AI_CHAT, Organization(id=uuid4(), plan="free"))

        assert decision.allowed is True
        db_session.begin_nested.return_value.rollback.assert_called_once()

    def test_sentinel_org_always_allowed(self, db_session):
        decision = check_and_consume(db_session, Resource.AI_CHAT, sentinel_org())

        assert decision.allowed is True
        db_session.query.assert_not_called()


class TestRecord:
    def test_record_increments_counter(self, sqlite_db, make_org):
        org = make_org(ai_chats_today=4)

        record(sqlite_db, Resource.AI_CHAT, org)
        record(sqlite_db, Resource.STORAGE, org, 2048)
        sqlite_db.commit()
        sqlite_db.refresh(org)

        assert org.ai_chats_today == 5
        assert org.storage_used_bytes == 2048

    def test_record_swallows_persistence_error(self, db_session, make_org):
        db_session.query.side_effect = _db_error()
        org = make_org()

        assert record(db_session, Resource.TASK, org) is None
        db_session.begin_nested.return_value.rollback.assert_called_once()

    def test_release_storage_never_goes_negative(self, sqlite_db, make_org):
        org = make_org(storage_used_bytes=1000)

        release_storage(sqlite_db, org, 400)
        sqlite_db.commit()
        sqlite_db.refresh(org)
        assert org.storage_used_bytes == 600

        release_storage(sqlite_db, org, 5000)
        sqlite_db.commit()
        sqlite_db.refresh(org)
        assert org.storage_used_bytes == 0


class TestPlanTable:
    @pytest.mark.parametrize("plan", [None, "", "enterprise", "FREE", "gold"])
    def test_unknown_plan_gets_free_limits(self, plan):
        assert get_limits(plan) == PLAN_LIMITS["free"]

    def test_every_limit_is_bounded(self):
        for limits in PLAN_LIMITS.values():
            assert limits.ai_chats_per_day > 0
            assert limits.storage_bytes > 0

    def test_normalize_period_accepts_thai_and_english(self):
        assert normalize_period("yearly") == "yearly"
        assert normalize_period("รายปี") == "yearly"
        assert normalize_period("monthly") == "monthly"
        assert normalize_period(None) == "monthly"


class TestFeaturesAndCaps:
    def test_free_plan_cannot_summarize(self, make_org):
        org = make_org()
        decision = usage_service.can_access_feature(org, Feature.SUMMARY_TODAY)
        assert decision.allowed is False
        assert "Basic" in decision.message

    def test_basic_plan_summarizes_today_only(self, make_org):
        org = make_org(plan="basic")
        assert usage_service.can_access_feature(org, Feature.SUMMARY_TODAY).allowed is True
        assert usage_service.can_access_feature(org, Feature.SUMMARY_YESTERDAY).allowed is False

    def test_pro_plan_has_all_features(self, make_org):
        org = make_org(plan="pro")
        for feature in Feature:
            assert usage_service.can_access_feature(org, feature).allowed is True

    def test_reminder_cap(self, make_org):
        org = make_org()
        assert usage_service.check_cap(org, Cap.REMINDERS, 2).allowed is True
        denied = usage_service.check_cap(org, Cap.REMINDERS, 3)
        assert denied.allowed is False
        assert "3" in denied.message


class TestMessages:
    def test_ai_denial_names_higher_tiers(self):
        message = usage_service.denial_message(Resource.AI_CHAT, "free", 10)
        assert "Basic" in message and "50 ครั้ง/วัน" in message
        assert "Pro" in message and "200 ครั้ง/วัน" in message
        assert "ไม่จำกัด" in message

    def test_business_denial_has_no_upgrade_lines(self):
        message = usage_service.denial_message(Resource.STORAGE, "business", 50 * 1024 * MB, 50 * 1024 * MB)
        assert "อัพเกรด" not in message

    def test_plan_status_shows_usage(self, sqlite_db, make_org):
        org = make_org(ai_chats_today=3, tasks_this_month=2)

        status = usage_service.get_plan_status(sqlite_db, org)

        assert "FREE" in status
        assert "3/10" in status
        assert "2/5" in status

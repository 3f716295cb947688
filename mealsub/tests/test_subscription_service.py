import pytest
from datetime import date
from decimal import Decimal

from ..core.exceptions import (
    AlreadyExpiredError,
    BundleMemberError,
    CapacityExceededError,
    ConflictingSubscriptionError,
    InvalidReferenceError,
    InvalidTransitionError,
    SubscriptionNotFoundError,
    ValidationError,
)
from ..models.base import PaginationParams
from ..models.subscription import DateRange, MealType, SubscriptionStatus
from .conftest import FEBRUARY, TODAY, add_menu, add_vendor


class TestCreateSubscription:
    """订阅创建测试"""

    def test_create_locks_price_and_starts_pending(self, services, catalog, sample_user):
        """测试创建订阅时锁定菜单价格，状态为待支付"""
        sub = services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
        )

        assert sub.status == SubscriptionStatus.PENDING
        assert sub.price == Decimal("25.00")
        assert sub.meal_type == MealType.LUNCH
        assert sub.start_date == FEBRUARY.start_date
        assert sub.monthly_subscription_id is None

    def test_price_not_affected_by_later_menu_change(self, services, test_db, catalog, sample_user):
        """测试菜单改价不影响已创建订阅的价格"""
        sub = services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
        )
        test_db.execute_query("UPDATE vendor_menus SET price = 99.00 WHERE id = ?", [catalog["lunch"]["a"]])

        assert services.subscriptions.get_subscription(sub.id).price == Decimal("25.00")

    def test_menu_of_other_vendor_rejected(self, services, catalog, sample_user):
        """测试菜单不属于指定商家时创建失败"""
        with pytest.raises(InvalidReferenceError):
            services.subscriptions.create(
                sample_user, catalog["vendors"]["a"], catalog["lunch"]["b"], FEBRUARY
            )

    def test_missing_menu_rejected(self, services, catalog, sample_user):
        """测试菜单不存在时创建失败"""
        with pytest.raises(InvalidReferenceError):
            services.subscriptions.create(sample_user, catalog["vendors"]["a"], 9999, FEBRUARY)

    def test_inactive_menu_rejected(self, services, catalog, sample_user):
        """测试已下架的菜单不能订阅"""
        with pytest.raises(InvalidReferenceError):
            services.subscriptions.create(
                sample_user, catalog["vendors"]["a"], catalog["inactive_a"], FEBRUARY
            )

    def test_date_order_validated(self):
        """测试开始日期必须早于结束日期"""
        with pytest.raises(ValidationError):
            DateRange.of(date(2024, 2, 29), date(2024, 2, 1))
        with pytest.raises(ValidationError):
            DateRange.of(date(2024, 2, 1), date(2024, 2, 1))

    def test_capacity_exceeded(self, services, test_db, sample_user, other_user):
        """测试商家容量为1且已有生效订阅时，第二个订阅创建失败"""
        vendor_id = add_vendor(test_db, "tiny kitchen", capacity=1)
        menu_id = add_menu(test_db, vendor_id, "12.00")
        first = services.subscriptions.create(sample_user, vendor_id, menu_id, FEBRUARY)
        services.subscriptions.activate(first.id)

        with pytest.raises(CapacityExceededError):
            services.subscriptions.create(other_user, vendor_id, menu_id, FEBRUARY)

    def test_pending_subscription_holds_seat(self, services, test_db, sample_user, other_user):
        """测试待支付订阅也占用名额，放弃后释放"""
        vendor_id = add_vendor(test_db, "tiny kitchen", capacity=1)
        menu_id = add_menu(test_db, vendor_id, "12.00")
        first = services.subscriptions.create(sample_user, vendor_id, menu_id, FEBRUARY)

        with pytest.raises(CapacityExceededError):
            services.subscriptions.create(other_user, vendor_id, menu_id, FEBRUARY)

        services.subscriptions.fail(sample_user, first.id)
        second = services.subscriptions.create(other_user, vendor_id, menu_id, FEBRUARY)
        assert second.status == SubscriptionStatus.PENDING

    def test_non_overlapping_period_has_capacity(self, services, test_db, sample_user, other_user):
        """测试不重叠的周期不占用彼此的名额"""
        vendor_id = add_vendor(test_db, "tiny kitchen", capacity=1)
        menu_id = add_menu(test_db, vendor_id, "12.00")
        services.subscriptions.create(sample_user, vendor_id, menu_id, FEBRUARY)

        march = DateRange.of(date(2024, 3, 1), date(2024, 3, 31))
        sub = services.subscriptions.create(other_user, vendor_id, menu_id, march)
        assert sub.id is not None

    def test_create_writes_audit_log(self, services, test_db, catalog, sample_user):
        """测试创建订阅记录操作日志"""
        sub = services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
        )
        row = test_db.execute_one(
            "SELECT action, detail_json FROM logs WHERE action = 'subscription_create'"
        )
        assert row is not None
        assert str(sub.id) in row["detail_json"]


class TestSubscriptionTransitions:
    """订阅状态流转测试"""

    @pytest.fixture
    def pending(self, services, catalog, sample_user):
        return services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
        )

    def test_activate_pending(self, services, pending, sink):
        """测试待支付订阅可以激活，并在提交后发出事件"""
        sub = services.subscriptions.activate(pending.id)

        assert sub.status == SubscriptionStatus.ACTIVE
        assert "subscription.activated" in sink.types()

    def test_activate_twice_fails(self, services, pending):
        """测试重复激活失败"""
        services.subscriptions.activate(pending.id)
        with pytest.raises(InvalidTransitionError):
            services.subscriptions.activate(pending.id)

    def test_cancel_active(self, services, pending, sample_user, sink):
        """测试取消生效中的订阅"""
        services.subscriptions.activate(pending.id)
        sub = services.subscriptions.cancel(sample_user, pending.id)

        assert sub.status == SubscriptionStatus.CANCELLED
        assert "subscription.cancelled" in sink.types()

    def test_cancel_pending_fails(self, services, pending, sample_user):
        """测试待支付订阅不能取消"""
        with pytest.raises(InvalidTransitionError):
            services.subscriptions.cancel(sample_user, pending.id)

    def test_cancel_on_last_day_allowed(self, services, pending, sample_user, clock):
        """测试结束日期当天仍可取消"""
        services.subscriptions.activate(pending.id)
        clock.current = FEBRUARY.end_date

        assert services.subscriptions.cancel(sample_user, pending.id).status == SubscriptionStatus.CANCELLED

    @pytest.mark.parametrize("prepare", ["pending", "active", "expired", "cancelled"])
    def test_cancel_after_end_date_always_already_expired(self, services, pending, sample_user,
                                                          clock, prepare):
        """测试结束日期已过时取消一律返回 AlreadyExpired，与存储状态无关"""
        if prepare in ("active", "expired", "cancelled"):
            services.subscriptions.activate(pending.id)
        if prepare == "expired":
            services.subscriptions.expire(pending.id)
        if prepare == "cancelled":
            services.subscriptions.cancel(sample_user, pending.id)

        clock.current = date(2024, 3, 1)
        with pytest.raises(AlreadyExpiredError):
            services.subscriptions.cancel(sample_user, pending.id)

    def test_expire_active(self, services, pending):
        """测试生效订阅可以过期"""
        services.subscriptions.activate(pending.id)
        assert services.subscriptions.expire(pending.id).status == SubscriptionStatus.EXPIRED

    def test_expire_pending_fails(self, services, pending):
        """测试待支付订阅不会被过期"""
        with pytest.raises(InvalidTransitionError):
            services.subscriptions.expire(pending.id)

    def test_fail_pending(self, services, pending, sample_user):
        """测试放弃待支付订阅"""
        sub = services.subscriptions.fail(sample_user, pending.id)
        assert sub.status == SubscriptionStatus.FAILED

    @pytest.mark.parametrize("terminal", ["expired", "cancelled", "failed"])
    def test_terminal_state_is_final(self, services, pending, sample_user, terminal):
        """测试进入终态后任何转换都失败"""
        if terminal == "failed":
            services.subscriptions.fail(sample_user, pending.id)
        else:
            services.subscriptions.activate(pending.id)
            if terminal == "expired":
                services.subscriptions.expire(pending.id)
            else:
                services.subscriptions.cancel(sample_user, pending.id)

        attempts = [
            lambda: services.subscriptions.activate(pending.id),
            lambda: services.subscriptions.expire(pending.id),
            lambda: services.subscriptions.cancel(sample_user, pending.id),
            lambda: services.subscriptions.fail(sample_user, pending.id),
        ]
        for attempt in attempts:
            with pytest.raises(InvalidTransitionError):
                attempt()

        final = services.subscriptions.get_subscription(pending.id)
        assert final.status == SubscriptionStatus(terminal)
        assert final.is_terminal

    def test_cancel_and_expire_race_first_wins(self, services, pending, sample_user):
        """测试取消与过期竞争时，先完成的一方生效，另一方得到业务错误"""
        services.subscriptions.activate(pending.id)
        services.subscriptions.expire(pending.id)

        with pytest.raises(InvalidTransitionError):
            services.subscriptions.cancel(sample_user, pending.id)
        assert services.subscriptions.get_subscription(pending.id).status == SubscriptionStatus.EXPIRED


class TestSubscriptionQueries:
    """订阅查询测试"""

    def test_find_owned_hides_foreign_subscription(self, services, catalog, sample_user, other_user):
        """测试他人的订阅与不存在的订阅一样返回 NotFound"""
        sub = services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
        )

        with pytest.raises(SubscriptionNotFoundError):
            services.subscriptions.find_owned(other_user, sub.id)
        with pytest.raises(SubscriptionNotFoundError):
            services.subscriptions.find_owned(sample_user, 424242)
        assert services.subscriptions.find_owned(sample_user, sub.id).id == sub.id

    def test_foreign_user_cannot_cancel(self, services, catalog, sample_user, other_user):
        """测试不能取消他人的订阅"""
        sub = services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
        )
        services.subscriptions.activate(sub.id)

        with pytest.raises(SubscriptionNotFoundError):
            services.subscriptions.cancel(other_user, sub.id)

    def test_list_for_user_paginated_newest_first(self, services, catalog, sample_user, other_user):
        """测试分页查询，只返回本人的订阅"""
        created = [
            services.subscriptions.create(sample_user, catalog["vendors"][name], catalog["lunch"][name], FEBRUARY)
            for name in "abc"
        ]
        services.subscriptions.create(other_user, catalog["vendors"]["d"], catalog["lunch"]["d"], FEBRUARY)

        page = services.subscriptions.list_for_user(sample_user, PaginationParams(page=1, size=2))
        assert page.total == 3
        assert page.pages == 2
        assert [item.id for item in page.items] == [created[2].id, created[1].id]

        services.subscriptions.activate(created[0].id)
        active = services.subscriptions.list_for_user(
            sample_user, PaginationParams(), status=SubscriptionStatus.ACTIVE
        )
        assert [item.id for item in active.items] == [created[0].id]

    def test_bundle_member_cannot_be_cancelled_alone(self, services, catalog, sample_user):
        """测试月度订阅的成员不能单独取消或放弃"""
        from ..services import VendorMenuPair
        bundle = services.bundles.create_bundle(
            sample_user,
            [VendorMenuPair(catalog["vendors"]["a"], catalog["lunch"]["a"])],
            MealType.LUNCH, FEBRUARY, "addr-1",
        )
        member_id = bundle.member_subscription_ids[0]

        with pytest.raises(BundleMemberError):
            services.subscriptions.fail(sample_user, member_id)

        services.bundles.activate_bundle(bundle.id)
        with pytest.raises(BundleMemberError):
            services.subscriptions.cancel(sample_user, member_id)


class TestCreateSubscriptionGuards:
    """订阅创建前置检查测试"""

    def test_start_date_in_past_rejected(self, services, catalog, sample_user, test_db):
        """测试开始日期早于今天时创建失败"""
        december = DateRange.of(date(2023, 12, 1), date(2023, 12, 31))

        with pytest.raises(ValidationError) as exc_info:
            services.subscriptions.create(
                sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], december
            )

        assert exc_info.value.details["today"] == TODAY.isoformat()
        assert test_db.execute_one("SELECT COUNT(*) AS cnt FROM meal_subscriptions")["cnt"] == 0

    def test_start_today_allowed(self, services, catalog, sample_user):
        """测试开始日期为今天时可以创建"""
        period = DateRange.of(TODAY, date(2024, 2, 14))
        sub = services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], period
        )
        assert sub.start_date == TODAY

    def test_start_date_follows_clock(self, services, catalog, sample_user, clock):
        """测试时钟前进后，原本合法的开始日期变为过去"""
        clock.current = date(2024, 2, 2)
        with pytest.raises(ValidationError):
            services.subscriptions.create(
                sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
            )

    def test_overlapping_active_subscription_conflicts(self, services, catalog, sample_user, test_db):
        """测试同一用户同一商家同餐别已有生效订阅时，重叠周期不能再订"""
        first = services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
        )
        services.subscriptions.activate(first.id)

        overlap = DateRange.of(date(2024, 2, 20), date(2024, 3, 20))
        with pytest.raises(ConflictingSubscriptionError) as exc_info:
            services.subscriptions.create(
                sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], overlap
            )

        assert exc_info.value.error_code == "CONFLICTING_SUBSCRIPTION"
        assert exc_info.value.details["conflicting_subscription_ids"] == [first.id]
        assert test_db.execute_one("SELECT COUNT(*) AS cnt FROM meal_subscriptions")["cnt"] == 1

    def test_no_conflict_for_other_meal_type_user_or_period(self, services, catalog,
                                                            sample_user, other_user):
        """测试不同餐别、不同用户或不重叠周期不算冲突"""
        first = services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
        )
        services.subscriptions.activate(first.id)

        dinner = services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["dinner_a"], FEBRUARY
        )
        foreign = services.subscriptions.create(
            other_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
        )
        march = services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"],
            DateRange.of(date(2024, 3, 1), date(2024, 3, 31)),
        )

        assert dinner.meal_type == MealType.DINNER
        assert foreign.user_id == other_user
        assert march.start_date == date(2024, 3, 1)

    def test_pending_subscription_does_not_conflict(self, services, catalog, sample_user):
        """测试待支付订阅不阻止再次下单"""
        services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
        )
        again = services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
        )
        assert again.status == SubscriptionStatus.PENDING

    def test_cancelled_subscription_does_not_conflict(self, services, catalog, sample_user):
        """测试取消后可以重新订阅同一周期"""
        first = services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
        )
        services.subscriptions.activate(first.id)
        services.subscriptions.cancel(sample_user, first.id)

        again = services.subscriptions.create(
            sample_user, catalog["vendors"]["a"], catalog["lunch"]["a"], FEBRUARY
        )
        assert again.id != first.id

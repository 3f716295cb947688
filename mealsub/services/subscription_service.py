"""
订阅服务模块
管理单商家订阅的创建、查询和状态流转

状态机：
- pending -> active -> expired / cancelled
- pending -> failed
expired、cancelled、failed、completed 都是终态，不再允许任何转换。

业务规则：
- 创建时校验开始日期、菜单归属、重复订阅和商家容量，并锁定菜单价格
- 只有已过结束日期之前的生效订阅可以取消；过期后取消一律拒绝
- 所有进入终态的转换都带状态条件更新，避免并发覆盖
- 月度订阅的成员不能单独取消或放弃
"""

import json
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from ..core.database import DatabaseManager, db_manager
from ..core.events import AuditLogEventSink, EventPublisher, EventType
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
from ..models.base import PaginatedResponse, PaginationParams
from ..models.subscription import (
    DateRange,
    MealSubscription,
    MealType,
    SubscriptionStatus,
    can_transition,
)
from .capacity_service import CapacityService
from .directory_service import MenuDirectory, VendorDirectory
from .pricing_service import PricingService


class SubscriptionService:
    """订阅服务类，封装单商家订阅的业务逻辑"""

    def __init__(self, db: DatabaseManager = None,
                 menus: MenuDirectory = None,
                 pricing: PricingService = None,
                 capacity: CapacityService = None,
                 events: EventPublisher = None,
                 today: Callable[[], date] = None):
        self.db = db or db_manager
        self.menus = menus or MenuDirectory(self.db)
        self.pricing = pricing or PricingService(self.menus)
        self.capacity = capacity or CapacityService(VendorDirectory(self.db))
        self.events = events or EventPublisher(AuditLogEventSink(self.db), self.db)
        self.today = today or date.today

    def create(self, user_id: int, vendor_id: int, menu_id: int,
               date_range: DateRange, meal_type: Optional[MealType] = None,
               monthly_subscription_id: Optional[int] = None) -> MealSubscription:
        """
        创建新订阅（待支付状态）

        Args:
            user_id: 用户ID
            vendor_id: 商家ID
            menu_id: 菜单ID，必须属于该商家
            date_range: 订阅周期
            meal_type: 指定餐别时要求菜单餐别一致（月度订阅使用）
            monthly_subscription_id: 所属月度订阅

        Returns:
            MealSubscription: 新建的订阅

        Raises:
            ValidationError: 开始日期早于今天，或菜单餐别与要求不一致时
            InvalidReferenceError: 菜单不存在、已下架或不属于该商家时
            ConflictingSubscriptionError: 同一商家同餐别在重叠周期内已有生效订阅时
            CapacityExceededError: 商家本期容量已满时
        """
        self.check_start_date(date_range)

        with self.db.transaction() as conn:
            menu = self.menus.get_menu(vendor_id, menu_id)
            if menu is None or menu.vendor_id != vendor_id or menu.status != "active":
                raise InvalidReferenceError(vendor_id, menu_id)

            if meal_type is not None and menu.meal_type != meal_type:
                raise ValidationError(
                    f"菜单餐别为 {menu.meal_type.value}，与订阅餐别 {meal_type.value} 不一致",
                    details={"vendor_id": vendor_id, "menu_id": menu_id},
                )

            conflicts = self.find_conflicting(user_id, [vendor_id], menu.meal_type, date_range)
            if conflicts:
                raise ConflictingSubscriptionError(vendor_id, [c.id for c in conflicts])

            if not self.capacity.has_capacity(vendor_id, date_range):
                raise CapacityExceededError(vendor_id)

            price = self.pricing.resolve_price(vendor_id, menu_id)
            now = datetime.now()

            row = conn.execute(
                """
                INSERT INTO meal_subscriptions(
                    user_id, vendor_id, menu_id, meal_type, price, status,
                    start_date, end_date, monthly_subscription_id, created_at, updated_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?) RETURNING id
                """,
                [
                    user_id, vendor_id, menu_id, menu.meal_type.value, price,
                    SubscriptionStatus.PENDING.value,
                    date_range.start_date, date_range.end_date,
                    monthly_subscription_id, now, now,
                ],
            ).fetchone()
            subscription_id = row[0]

            self._log_subscription_operation(conn, user_id, subscription_id, "create", {
                "vendor_id": vendor_id,
                "menu_id": menu_id,
                "price": str(price),
                "start_date": date_range.start_date.isoformat(),
                "end_date": date_range.end_date.isoformat(),
                "monthly_subscription_id": monthly_subscription_id,
            })

            return self.get_subscription(subscription_id)

    def activate(self, subscription_id: int) -> MealSubscription:
        """待支付 -> 生效，只在支付完成后调用"""
        with self.db.transaction() as conn:
            self._transition(conn, subscription_id, SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE)
            subscription = self.get_subscription(subscription_id)
            self._log_subscription_operation(conn, subscription.user_id, subscription_id, "activate")
            self.events.emit(EventType.SUBSCRIPTION_ACTIVATED, {
                "user_id": subscription.user_id,
                "subscription_id": subscription_id,
                "subscription_type": "single",
            })
            return subscription

    def cancel(self, user_id: int, subscription_id: int) -> MealSubscription:
        """
        用户取消订阅

        Raises:
            SubscriptionNotFoundError: 订阅不存在或不属于该用户
            AlreadyExpiredError: 已过结束日期（无论当前存储的状态）
            BundleMemberError: 订阅属于月度订阅
            InvalidTransitionError: 当前状态不是生效中
        """
        with self.db.transaction() as conn:
            subscription = self.find_owned(user_id, subscription_id)
            if subscription.end_date < self.today():
                raise AlreadyExpiredError(subscription_id, subscription.end_date)
            if subscription.is_bundle_member:
                raise BundleMemberError(subscription_id, subscription.monthly_subscription_id)

            self._transition(conn, subscription_id, SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED)
            self._log_subscription_operation(conn, user_id, subscription_id, "cancel")
            self.events.emit(EventType.SUBSCRIPTION_CANCELLED, {
                "user_id": user_id,
                "subscription_id": subscription_id,
                "subscription_type": "single",
            })
            return self.get_subscription(subscription_id)

    def cancel_if_active(self, subscription_id: int) -> bool:
        """
        月度订阅级联取消使用：生效中的成员转为已取消并返回 True，
        已处于其他状态（例如已单独过期）的成员跳过并返回 False
        """
        with self.db.transaction() as conn:
            if not self._compare_and_set(conn, subscription_id,
                                         SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED):
                return False
            subscription = self.get_subscription(subscription_id)
            self._log_subscription_operation(conn, subscription.user_id, subscription_id, "cancel_cascade")
            return True

    def expire(self, subscription_id: int) -> MealSubscription:
        """生效 -> 已过期，仅由过期扫描任务调用"""
        with self.db.transaction() as conn:
            self._transition(conn, subscription_id, SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED)
            subscription = self.get_subscription(subscription_id)
            self._log_subscription_operation(conn, subscription.user_id, subscription_id, "expire")
            self.events.emit(EventType.SUBSCRIPTION_EXPIRED, {
                "user_id": subscription.user_id,
                "subscription_id": subscription_id,
                "subscription_type": "single",
            })
            return subscription

    def fail(self, user_id: int, subscription_id: int) -> MealSubscription:
        """用户放弃未支付的订阅：待支付 -> 失败，释放商家名额"""
        with self.db.transaction() as conn:
            subscription = self.find_owned(user_id, subscription_id)
            if subscription.is_bundle_member:
                raise BundleMemberError(subscription_id, subscription.monthly_subscription_id)
            self._transition(conn, subscription_id, SubscriptionStatus.PENDING, SubscriptionStatus.FAILED)
            self._log_subscription_operation(conn, user_id, subscription_id, "fail")
            return self.get_subscription(subscription_id)

    def activate_member(self, subscription_id: int) -> bool:
        """月度订阅激活时的成员级联，成员不是待支付状态时返回 False"""
        with self.db.transaction() as conn:
            if not self._compare_and_set(conn, subscription_id,
                                         SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE):
                return False
            subscription = self.get_subscription(subscription_id)
            self._log_subscription_operation(conn, subscription.user_id, subscription_id, "activate_cascade")
            return True

    def fail_member(self, subscription_id: int) -> bool:
        """月度订阅放弃时的成员级联"""
        with self.db.transaction() as conn:
            if not self._compare_and_set(conn, subscription_id,
                                         SubscriptionStatus.PENDING, SubscriptionStatus.FAILED):
                return False
            subscription = self.get_subscription(subscription_id)
            self._log_subscription_operation(conn, subscription.user_id, subscription_id, "fail_cascade")
            return True

    def find_owned(self, user_id: int, subscription_id: int) -> MealSubscription:
        """按用户和ID查询；不属于该用户的订阅与不存在的订阅一样处理"""
        row = self.db.execute_one(
            "SELECT * FROM meal_subscriptions WHERE id = ? AND user_id = ?",
            [subscription_id, user_id],
        )
        if not row:
            raise SubscriptionNotFoundError(subscription_id)
        return MealSubscription(**row)

    def get_subscription(self, subscription_id: int) -> Optional[MealSubscription]:
        row = self.db.execute_one(
            "SELECT * FROM meal_subscriptions WHERE id = ?", [subscription_id]
        )
        return MealSubscription(**row) if row else None

    def list_for_user(self, user_id: int, pagination: PaginationParams,
                      status: Optional[SubscriptionStatus] = None,
                      meal_type: Optional[MealType] = None) -> PaginatedResponse:
        """分页查询用户的订阅，最新的在前"""
        conditions = ["user_id = ?"]
        params: List[Any] = [user_id]

        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)

        if meal_type is not None:
            conditions.append("meal_type = ?")
            params.append(meal_type.value)

        where = " AND ".join(conditions)
        total = self.db.execute_one(
            f"SELECT COUNT(*) AS cnt FROM meal_subscriptions WHERE {where}", params
        )["cnt"]
        rows = self.db.execute_query(
            f"""
            SELECT * FROM meal_subscriptions WHERE {where}
            ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            params + [pagination.size, pagination.offset],
        )
        items = [MealSubscription(**row) for row in rows]
        return PaginatedResponse.create(items, total, pagination)

    def find_by_monthly_subscription(self, monthly_subscription_id: int) -> List[MealSubscription]:
        rows = self.db.execute_query(
            "SELECT * FROM meal_subscriptions WHERE monthly_subscription_id = ? ORDER BY id",
            [monthly_subscription_id],
        )
        return [MealSubscription(**row) for row in rows]

    def check_start_date(self, date_range: DateRange):
        """开始日期必须是今天或之后"""
        today = self.today()
        if date_range.start_date < today:
            raise ValidationError(
                "开始日期不能早于今天",
                details={"start_date": date_range.start_date.isoformat(), "today": today.isoformat()},
            )

    def find_conflicting(self, user_id: int, vendor_ids: List[int], meal_type: MealType,
                         date_range: DateRange) -> List[MealSubscription]:
        """用户在这些商家、同一餐别下与周期重叠的生效订阅"""
        if not vendor_ids:
            return []
        placeholders = ",".join("?" for _ in vendor_ids)
        rows = self.db.execute_query(
            f"""
            SELECT * FROM meal_subscriptions
            WHERE user_id = ? AND vendor_id IN ({placeholders})
              AND meal_type = ? AND status = 'active'
              AND start_date <= ? AND end_date >= ?
            ORDER BY id
            """,
            [user_id, *vendor_ids, meal_type.value, date_range.end_date, date_range.start_date],
        )
        return [MealSubscription(**row) for row in rows]

    def find_expirable_ids(self, today: date) -> List[int]:
        """结束日期早于今天且仍在生效中的订阅"""
        rows = self.db.execute_query(
            "SELECT id FROM meal_subscriptions WHERE status = 'active' AND end_date < ? ORDER BY id",
            [today],
        )
        return [row["id"] for row in rows]

    def _transition(self, conn, subscription_id: int,
                    current: SubscriptionStatus, target: SubscriptionStatus):
        """带状态条件的转换，失败时抛出 InvalidTransitionError"""
        if self._compare_and_set(conn, subscription_id, current, target):
            return
        existing = conn.execute(
            "SELECT status FROM meal_subscriptions WHERE id = ?", [subscription_id]
        ).fetchone()
        if existing is None:
            raise SubscriptionNotFoundError(subscription_id)
        raise InvalidTransitionError(subscription_id, existing[0], target.value)

    def _compare_and_set(self, conn, subscription_id: int,
                         current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
        if not can_transition(current, target):
            raise InvalidTransitionError(subscription_id, current.value, target.value)
        row = conn.execute(
            """
            UPDATE meal_subscriptions
            SET status = ?, updated_at = ?
            WHERE id = ? AND status = ?
            RETURNING id
            """,
            [target.value, datetime.now(), subscription_id, current.value],
        ).fetchone()
        return row is not None

    def _log_subscription_operation(self, conn, user_id: int, subscription_id: int,
                                    operation: str, detail: Dict[str, Any] = None):
        """记录订阅操作日志"""
        log_detail = {"subscription_id": subscription_id}
        log_detail.update(detail or {})
        conn.execute(
            "INSERT INTO logs(user_id, actor_id, action, detail_json) VALUES (?,?,?,?)",
            [user_id, user_id, f"subscription_{operation}", json.dumps(log_detail, ensure_ascii=False)],
        )

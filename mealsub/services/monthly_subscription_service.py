"""
月度订阅服务模块
把 1-4 个商家的订阅组合成一个月度订阅，统一计费

业务规则：
- 成员订阅和月度订阅在同一个事务中创建，任意成员失败则全部回滚
- 总价等于各成员锁定价格之和
- 激活时所有成员必须仍是待支付状态，否则视为数据不一致
- 取消时只级联取消仍在生效中的成员，已处于终态的成员跳过
- 创建后成员不可增删
"""

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from ..config.settings import settings
from ..core.database import DatabaseManager, db_manager
from ..core.events import AuditLogEventSink, EventPublisher, EventType
from ..core.exceptions import (
    AlreadyExpiredError,
    IntegrityViolationError,
    InvalidBundleSizeError,
    InvalidTransitionError,
    SubscriptionNotFoundError,
    ValidationError,
)
from ..models.base import PaginatedResponse, PaginationParams
from ..models.subscription import (
    BundleCancelResult,
    BundleStats,
    DateRange,
    MealType,
    MonthlySubscription,
    SelectionValidation,
    SubscriptionStatus,
    VendorSelectionCheck,
    can_transition,
)
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

# 预检时剩余名额不超过该值给出提示
LOW_CAPACITY_SLOTS = 2


@dataclass(frozen=True)
class VendorMenuPair:
    vendor_id: int
    menu_id: int


class MonthlySubscriptionService:
    """月度订阅服务类"""

    def __init__(self, db: DatabaseManager = None,
                 subscriptions: SubscriptionService = None,
                 events: EventPublisher = None,
                 today: Callable[[], date] = None):
        self.db = db or db_manager
        self.subscriptions = subscriptions or SubscriptionService(self.db)
        self.events = events or EventPublisher(AuditLogEventSink(self.db), self.db)
        self.today = today or date.today

    def create_bundle(self, user_id: int, pairs: List[VendorMenuPair],
                      meal_type: MealType, date_range: DateRange,
                      address_id: str) -> MonthlySubscription:
        """
        创建月度订阅

        Args:
            user_id: 用户ID
            pairs: 商家与菜单，1 到 4 组，商家不可重复
            meal_type: 所有成员共用的餐别
            date_range: 所有成员共用的订阅周期
            address_id: 配送地址

        Returns:
            MonthlySubscription: 待支付状态的月度订阅

        Raises:
            InvalidBundleSizeError: 商家数量不在 1-4 之间
            ValidationError: 商家重复或菜单餐别不一致
            InvalidReferenceError / CapacityExceededError: 任意成员创建失败时，整体回滚
        """
        maximum = settings.max_vendors_per_bundle
        if not 1 <= len(pairs) <= maximum:
            raise InvalidBundleSizeError(len(pairs), maximum)

        vendor_ids = [pair.vendor_id for pair in pairs]
        if len(set(vendor_ids)) != len(vendor_ids):
            raise ValidationError("月度订阅中的商家不能重复", details={"vendor_ids": vendor_ids})

        if not address_id:
            raise ValidationError("配送地址不能为空")

        self.subscriptions.check_start_date(date_range)

        with self.db.transaction() as conn:
            bundle_id = conn.execute(
                "SELECT nextval('monthly_subscriptions_id_seq')"
            ).fetchone()[0]

            members = [
                self.subscriptions.create(
                    user_id, pair.vendor_id, pair.menu_id, date_range,
                    meal_type=meal_type, monthly_subscription_id=bundle_id,
                )
                for pair in pairs
            ]
            total_price = sum((member.price for member in members), Decimal("0.00"))
            member_ids = [member.id for member in members]
            now = datetime.now()

            conn.execute(
                """
                INSERT INTO monthly_subscriptions(
                    id, user_id, vendor_ids, member_subscription_ids, meal_type,
                    total_price, status, start_date, end_date, address_id,
                    created_at, updated_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                [
                    bundle_id, user_id, json.dumps(vendor_ids), json.dumps(member_ids),
                    meal_type.value, total_price, SubscriptionStatus.PENDING.value,
                    date_range.start_date, date_range.end_date, address_id, now, now,
                ],
            )

            self._log_bundle_operation(conn, user_id, bundle_id, "create", {
                "vendor_ids": vendor_ids,
                "member_subscription_ids": member_ids,
                "total_price": str(total_price),
            })

            return self.get_bundle(bundle_id)

    def validate_selection(self, user_id: int, pairs: List[VendorMenuPair],
                           meal_type: MealType, date_range: DateRange) -> SelectionValidation:
        """
        月度订阅预检

        按 create_bundle 的规则检查商家选择，收集全部问题而不是遇到第一个就失败；
        不写入任何数据，也不占用名额。名额所剩无几时给出提示。
        """
        errors: List[str] = []
        warnings: List[str] = []

        maximum = settings.max_vendors_per_bundle
        if not 1 <= len(pairs) <= maximum:
            errors.append(f"每个月度订阅需要 1 到 {maximum} 个商家")

        vendor_ids = [pair.vendor_id for pair in pairs]
        if len(set(vendor_ids)) != len(vendor_ids):
            errors.append("月度订阅中的商家不能重复")

        if date_range.start_date < self.today():
            errors.append("开始日期不能早于今天")

        checks = [self._check_vendor(user_id, pair, meal_type, date_range) for pair in pairs]
        for check in checks:
            errors.extend(check.issues)
            if check.has_capacity and check.available_slots <= LOW_CAPACITY_SLOTS:
                warnings.append(f"商家 {check.vendor_id} 本期仅剩 {check.available_slots} 个名额")

        return SelectionValidation(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            vendors=checks,
            total_price=sum((c.price for c in checks if c.price is not None), Decimal("0.00")),
            validated_at=datetime.now(),
        )

    def activate_bundle(self, bundle_id: int, payment_id: Optional[int] = None) -> MonthlySubscription:
        """
        待支付 -> 生效，并级联激活所有成员

        成员不是待支付状态时抛出 IntegrityViolationError，整个事务回滚。
        """
        with self.db.transaction() as conn:
            self._transition(conn, bundle_id, SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE)
            bundle = self.get_bundle(bundle_id)

            for member_id in bundle.member_subscription_ids:
                if not self.subscriptions.activate_member(member_id):
                    logger.error("Bundle %s member %s is not pending during activation", bundle_id, member_id)
                    raise IntegrityViolationError(
                        "月度订阅成员状态不一致，无法激活",
                        details={"monthly_subscription_id": bundle_id, "subscription_id": member_id},
                    )

            if payment_id is not None:
                conn.execute(
                    "UPDATE monthly_subscriptions SET payment_id = ? WHERE id = ?",
                    [payment_id, bundle_id],
                )

            self._log_bundle_operation(conn, bundle.user_id, bundle_id, "activate", {"payment_id": payment_id})
            self.events.emit(EventType.SUBSCRIPTION_ACTIVATED, {
                "user_id": bundle.user_id,
                "subscription_id": bundle_id,
                "subscription_type": "monthly",
                "member_subscription_ids": bundle.member_subscription_ids,
            })
            return self.get_bundle(bundle_id)

    def cancel_bundle(self, user_id: int, bundle_id: int) -> BundleCancelResult:
        """取消月度订阅，并尽量取消仍在生效中的成员"""
        with self.db.transaction() as conn:
            bundle = self.find_owned_bundle(user_id, bundle_id)
            if bundle.end_date < self.today():
                raise AlreadyExpiredError(bundle_id, bundle.end_date)

            self._transition(conn, bundle_id, SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED)

            cancelled, skipped = [], []
            for member_id in bundle.member_subscription_ids:
                if self.subscriptions.cancel_if_active(member_id):
                    cancelled.append(member_id)
                else:
                    skipped.append(member_id)

            if skipped:
                logger.info("Bundle %s cancelled, skipped members already closed: %s", bundle_id, skipped)

            self._log_bundle_operation(conn, user_id, bundle_id, "cancel", {
                "cancelled_member_ids": cancelled,
                "skipped_member_ids": skipped,
            })
            self.events.emit(EventType.SUBSCRIPTION_CANCELLED, {
                "user_id": user_id,
                "subscription_id": bundle_id,
                "subscription_type": "monthly",
            })
            return BundleCancelResult(
                bundle=self.get_bundle(bundle_id),
                cancelled_member_ids=cancelled,
                skipped_member_ids=skipped,
            )

    def expire_bundle(self, bundle_id: int) -> MonthlySubscription:
        """生效 -> 已过期，仅由过期扫描任务调用；成员由扫描任务各自处理"""
        with self.db.transaction() as conn:
            self._transition(conn, bundle_id, SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED)
            bundle = self.get_bundle(bundle_id)
            self._log_bundle_operation(conn, bundle.user_id, bundle_id, "expire")
            self.events.emit(EventType.SUBSCRIPTION_EXPIRED, {
                "user_id": bundle.user_id,
                "subscription_id": bundle_id,
                "subscription_type": "monthly",
            })
            return bundle

    def fail_bundle(self, user_id: int, bundle_id: int) -> MonthlySubscription:
        """放弃未支付的月度订阅，成员一起转为失败并释放名额"""
        with self.db.transaction() as conn:
            bundle = self.find_owned_bundle(user_id, bundle_id)
            self._transition(conn, bundle_id, SubscriptionStatus.PENDING, SubscriptionStatus.FAILED)

            for member_id in bundle.member_subscription_ids:
                if not self.subscriptions.fail_member(member_id):
                    logger.error("Bundle %s member %s is not pending while abandoning", bundle_id, member_id)
                    raise IntegrityViolationError(
                        "月度订阅成员状态不一致，无法放弃",
                        details={"monthly_subscription_id": bundle_id, "subscription_id": member_id},
                    )

            self._log_bundle_operation(conn, user_id, bundle_id, "fail")
            return self.get_bundle(bundle_id)

    def find_owned_bundle(self, user_id: int, bundle_id: int) -> MonthlySubscription:
        row = self.db.execute_one(
            "SELECT * FROM monthly_subscriptions WHERE id = ? AND user_id = ?",
            [bundle_id, user_id],
        )
        if not row:
            raise SubscriptionNotFoundError(bundle_id)
        return MonthlySubscription(**row)

    def get_bundle(self, bundle_id: int) -> Optional[MonthlySubscription]:
        row = self.db.execute_one("SELECT * FROM monthly_subscriptions WHERE id = ?", [bundle_id])
        return MonthlySubscription(**row) if row else None

    def list_bundles_for_user(self, user_id: int, pagination: PaginationParams,
                              status: Optional[SubscriptionStatus] = None) -> PaginatedResponse:
        """分页查询用户的月度订阅，最新的在前"""
        conditions = ["user_id = ?"]
        params: List[Any] = [user_id]
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)

        where = " AND ".join(conditions)
        total = self.db.execute_one(
            f"SELECT COUNT(*) AS cnt FROM monthly_subscriptions WHERE {where}", params
        )["cnt"]
        rows = self.db.execute_query(
            f"""
            SELECT * FROM monthly_subscriptions WHERE {where}
            ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            params + [pagination.size, pagination.offset],
        )
        return PaginatedResponse.create([MonthlySubscription(**row) for row in rows], total, pagination)

    def bundle_stats(self, user_id: int, bundle_id: int) -> BundleStats:
        """成员订阅统计"""
        bundle = self.find_owned_bundle(user_id, bundle_id)
        members = self.subscriptions.find_by_monthly_subscription(bundle_id)
        return BundleStats(
            total_subscriptions=len(members),
            active_subscriptions=sum(1 for m in members if m.status == SubscriptionStatus.ACTIVE),
            total_value=sum((m.price for m in members), Decimal("0.00")),
            vendor_count=len(bundle.vendor_ids),
        )

    def find_expirable_ids(self, today: date) -> List[int]:
        rows = self.db.execute_query(
            "SELECT id FROM monthly_subscriptions WHERE status = 'active' AND end_date < ? ORDER BY id",
            [today],
        )
        return [row["id"] for row in rows]

    def _check_vendor(self, user_id: int, pair: VendorMenuPair, meal_type: MealType,
                      date_range: DateRange) -> VendorSelectionCheck:
        vendor_id, menu_id = pair.vendor_id, pair.menu_id
        menu = self.subscriptions.menus.get_menu(vendor_id, menu_id)
        if menu is None or menu.vendor_id != vendor_id or menu.status != "active":
            return VendorSelectionCheck(
                vendor_id=vendor_id, menu_id=menu_id,
                issues=[f"商家 {vendor_id} 的菜单 {menu_id} 不存在或不可订阅"],
            )

        issues = []
        if menu.meal_type != meal_type:
            issues.append(f"商家 {vendor_id} 的菜单餐别为 {menu.meal_type.value}，与 {meal_type.value} 不一致")

        slots = self.subscriptions.capacity.available_slots(vendor_id, date_range)
        if slots <= 0:
            issues.append(f"商家 {vendor_id} 本期容量已满")

        if self.subscriptions.find_conflicting(user_id, [vendor_id], meal_type, date_range):
            issues.append(f"商家 {vendor_id} 在此期间已有生效中的同餐别订阅")

        return VendorSelectionCheck(
            vendor_id=vendor_id,
            menu_id=menu_id,
            price=self.subscriptions.pricing.resolve_price(vendor_id, menu_id),
            has_capacity=slots > 0,
            available_slots=slots,
            issues=issues,
        )

    def _transition(self, conn, bundle_id: int,
                    current: SubscriptionStatus, target: SubscriptionStatus):
        if not can_transition(current, target):
            raise InvalidTransitionError(bundle_id, current.value, target.value)
        row = conn.execute(
            """
            UPDATE monthly_subscriptions
            SET status = ?, updated_at = ?
            WHERE id = ? AND status = ?
            RETURNING id
            """,
            [target.value, datetime.now(), bundle_id, current.value],
        ).fetchone()
        if row is not None:
            return
        existing = conn.execute(
            "SELECT status FROM monthly_subscriptions WHERE id = ?", [bundle_id]
        ).fetchone()
        if existing is None:
            raise SubscriptionNotFoundError(bundle_id)
        raise InvalidTransitionError(bundle_id, existing[0], target.value)

    def _log_bundle_operation(self, conn, user_id: int, bundle_id: int,
                              operation: str, detail: Dict[str, Any] = None):
        """记录月度订阅操作日志"""
        log_detail = {"monthly_subscription_id": bundle_id}
        log_detail.update(detail or {})
        conn.execute(
            "INSERT INTO logs(user_id, actor_id, action, detail_json) VALUES (?,?,?,?)",
            [user_id, user_id, f"monthly_subscription_{operation}", json.dumps(log_detail, ensure_ascii=False)],
        )

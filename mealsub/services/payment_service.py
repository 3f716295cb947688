"""
支付服务模块
处理扣款、退款和支付汇总

支付流水只追加：
- 每次扣款尝试都新建一条记录，失败后重试也会新建记录
- 退款是一条金额为负数的新记录，payment_details 中记录原支付ID
- 已写入的记录只会更新 status、paid_at 和 payment_details

扣款流程：
1. 事务内写入待处理的支付记录
2. 事务外调用支付网关（不持有数据库锁）
3. 成功时在同一事务内完成支付并激活订阅；失败时记录失败原因，订阅保持待支付
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from ..config.settings import settings
from ..core.database import DatabaseManager, db_manager
from ..core.events import AuditLogEventSink, EventPublisher, EventType
from ..core.exceptions import (
    BaseApplicationError,
    BundleMemberError,
    InvalidTransitionError,
    NothingToRefundError,
    PaymentDeclinedError,
    PaymentProcessorError,
    ValidationError,
)
from ..models.payment import (
    Payment,
    PaymentDetails,
    PaymentMethod,
    PaymentStatus,
    PaymentSummary,
    SubscriptionType,
)
from ..models.subscription import SubscriptionStatus
from .monthly_subscription_service import MonthlySubscriptionService
from .payment_processor import PaymentProcessor, SimulatedPaymentProcessor
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class KeyedLocks:
    """按订阅分配的锁，同一订阅的扣款串行执行，不同订阅互不影响；无人使用的锁随即释放"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Any, threading.Lock] = {}
        self._holders: Dict[Any, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._holders[key] -= 1
                if self._holders[key] == 0:
                    del self._holders[key]
                    del self._locks[key]


def summarize_payments(payments: Iterable[Payment]) -> PaymentSummary:
    """
    根据支付流水计算汇总，与记录顺序无关

    - total_paid: 已完成的正数金额之和
    - total_refunded: 已完成的负数金额绝对值之和
    - payment_count: 正数金额的记录数（不含退款）
    - payment_status: 有已完成的扣款即为 completed，否则有失败记录为 failed，否则 pending
    """
    total_paid = ZERO
    total_refunded = ZERO
    payment_count = 0
    last_payment_date = None
    has_completed_charge = False
    has_failed = False

    for payment in payments:
        if payment.amount > 0:
            payment_count += 1
        if payment.status == PaymentStatus.COMPLETED:
            if payment.amount > 0:
                total_paid += payment.amount
                has_completed_charge = True
            elif payment.amount < 0:
                total_refunded += -payment.amount
        elif payment.status == PaymentStatus.FAILED:
            has_failed = True
        if payment.created_at and (last_payment_date is None or payment.created_at > last_payment_date):
            last_payment_date = payment.created_at

    if has_completed_charge:
        status = PaymentStatus.COMPLETED
    elif has_failed:
        status = PaymentStatus.FAILED
    else:
        status = PaymentStatus.PENDING

    return PaymentSummary(
        total_paid=total_paid,
        total_refunded=total_refunded,
        net_amount=total_paid - total_refunded,
        payment_count=payment_count,
        last_payment_date=last_payment_date,
        payment_status=status,
    )


class PaymentService:
    """支付服务类"""

    def __init__(self, db: DatabaseManager = None,
                 subscriptions: SubscriptionService = None,
                 bundles: MonthlySubscriptionService = None,
                 processor: PaymentProcessor = None,
                 events: EventPublisher = None):
        self.db = db or db_manager
        self.subscriptions = subscriptions or SubscriptionService(self.db)
        self.bundles = bundles or MonthlySubscriptionService(self.db, self.subscriptions)
        self.processor = processor or SimulatedPaymentProcessor()
        self.events = events or EventPublisher(AuditLogEventSink(self.db), self.db)
        self._locks = KeyedLocks()

    def charge(self, user_id: int, subscription_id: int, subscription_type: SubscriptionType,
               payment_method: PaymentMethod, amount: Optional[Decimal] = None) -> Payment:
        """
        对待支付的订阅扣款

        Args:
            user_id: 用户ID，订阅必须属于该用户
            subscription_id: 订阅ID或月度订阅ID
            subscription_type: single 或 monthly
            payment_method: 支付方式
            amount: 扣款金额，可省略；给出时必须等于锁定价格（月度订阅为总价）

        Returns:
            Payment: 已完成的支付记录

        Raises:
            InvalidTransitionError: 订阅不是待支付状态，或扣款成功后订阅已被并发修改（已自动退回）
            BundleMemberError: 月度订阅的成员不能单独支付
            ValidationError: 扣款金额与锁定价格不一致
            PaymentDeclinedError: 网关拒绝或不可用，支付已记录为失败
            DatabaseError: 扣款成功后写入失败，款项已自动退回
        """
        with self._locks.hold((subscription_type, subscription_id)):
            expected = self._chargeable_amount(user_id, subscription_id, subscription_type)
            amount = expected if amount is None else Decimal(amount).quantize(Decimal("0.01"))
            if amount <= 0:
                raise ValidationError("扣款金额必须大于0", details={"amount": str(amount)})
            if amount != expected:
                raise ValidationError(
                    "扣款金额必须等于订阅价格",
                    details={"amount": str(amount), "expected": str(expected)},
                )

            payment_id = self._insert_payment(
                user_id, subscription_id, subscription_type, amount, payment_method,
                PaymentDetails(currency=settings.currency),
            )

            try:
                result = self.processor.process(amount, payment_method, {
                    "payment_id": payment_id,
                    "subscription_id": subscription_id,
                    "subscription_type": subscription_type.value,
                    "currency": settings.currency,
                })
            except PaymentProcessorError as e:
                logger.warning("Payment processor error for payment %s: %s", payment_id, e.message)
                self._mark_failed(payment_id, e.message)
                raise PaymentDeclinedError(payment_id, e.message) from e
            except Exception as e:
                logger.error("Unexpected processor failure for payment %s", payment_id, exc_info=True)
                self._mark_failed(payment_id, str(e) or e.__class__.__name__)
                raise

            if not result.success:
                reason = result.message or "declined"
                self._mark_failed(payment_id, reason)
                raise PaymentDeclinedError(payment_id, reason)

            try:
                with self.db.transaction() as conn:
                    details = PaymentDetails(currency=settings.currency, transaction_ref=result.transaction_ref)
                    conn.execute(
                        "UPDATE payments SET status = ?, paid_at = ?, payment_details = ? WHERE id = ?",
                        [PaymentStatus.COMPLETED.value, datetime.now(), details.to_json(), payment_id],
                    )
                    if subscription_type == SubscriptionType.MONTHLY:
                        self.bundles.activate_bundle(subscription_id, payment_id=payment_id)
                    else:
                        self.subscriptions.activate(subscription_id)
                    self._log_payment_operation(conn, user_id, payment_id, "charge", {
                        "subscription_id": subscription_id,
                        "subscription_type": subscription_type.value,
                        "amount": str(amount),
                        "transaction_ref": result.transaction_ref,
                    })
                    self.events.emit(EventType.PAYMENT_COMPLETED, {
                        "user_id": user_id,
                        "payment_id": payment_id,
                        "subscription_id": subscription_id,
                        "subscription_type": subscription_type.value,
                        "amount": str(amount),
                    })
            except BaseApplicationError as e:
                # 扣款已成功但订阅无法激活（状态被并发修改或数据库写入失败），退回款项
                self._reverse_capture(payment_id, result.transaction_ref, amount, e.message)
                raise

            return self.get_payment(payment_id)

    def refund(self, user_id: int, subscription_id: int, subscription_type: SubscriptionType,
               amount: Decimal, reason: Optional[str] = None) -> Payment:
        """
        退款

        需要存在已完成的正数扣款，退款金额不能超过已支付净额。
        退款记录为负数金额，payment_details 中记录原支付ID和退款原因。
        """
        with self._locks.hold((subscription_type, subscription_id)):
            self._find_owned(user_id, subscription_id, subscription_type)
            payments = self.list_payments(subscription_id, subscription_type)
            original = next(
                (p for p in payments if p.status == PaymentStatus.COMPLETED and p.amount > 0),
                None,
            )
            if original is None:
                raise NothingToRefundError(subscription_id)

            amount = Decimal(amount).quantize(Decimal("0.01"))
            if amount <= 0:
                raise ValidationError("退款金额必须大于0", details={"amount": str(amount)})
            net_amount = summarize_payments(payments).net_amount
            if amount > net_amount:
                raise ValidationError(
                    "退款金额不能超过已支付净额",
                    details={"amount": str(amount), "net_amount": str(net_amount)},
                )

            details = PaymentDetails(
                currency=settings.currency,
                refund_reason=reason,
                original_payment_id=original.id,
            )
            refund_id = self._insert_payment(
                user_id, subscription_id, subscription_type, -amount,
                original.payment_method, details,
            )

            try:
                result = self.processor.refund(original.payment_details.transaction_ref, amount)
            except PaymentProcessorError as e:
                logger.warning("Refund processor error for payment %s: %s", refund_id, e.message)
                self._mark_failed(refund_id, e.message, details)
                raise PaymentDeclinedError(refund_id, e.message) from e
            except Exception as e:
                logger.error("Unexpected processor failure for refund %s", refund_id, exc_info=True)
                self._mark_failed(refund_id, str(e) or e.__class__.__name__, details)
                raise

            if not result.success:
                reason_text = result.message or "refund declined"
                self._mark_failed(refund_id, reason_text, details)
                raise PaymentDeclinedError(refund_id, reason_text)

            with self.db.transaction() as conn:
                details = details.model_copy(update={"refund_ref": result.refund_ref})
                conn.execute(
                    "UPDATE payments SET status = ?, paid_at = ?, payment_details = ? WHERE id = ?",
                    [PaymentStatus.COMPLETED.value, datetime.now(), details.to_json(), refund_id],
                )
                self._log_payment_operation(conn, user_id, refund_id, "refund", {
                    "subscription_id": subscription_id,
                    "subscription_type": subscription_type.value,
                    "amount": str(amount),
                    "original_payment_id": original.id,
                    "reason": reason,
                })

            return self.get_payment(refund_id)

    def summarize(self, subscription_id: int, subscription_type: SubscriptionType) -> PaymentSummary:
        return summarize_payments(self.list_payments(subscription_id, subscription_type))

    def summarize_owned(self, user_id: int, subscription_id: int,
                        subscription_type: SubscriptionType) -> PaymentSummary:
        self._find_owned(user_id, subscription_id, subscription_type)
        return self.summarize(subscription_id, subscription_type)

    def list_payments(self, subscription_id: int, subscription_type: SubscriptionType) -> List[Payment]:
        """订阅的支付流水，最新的在前"""
        rows = self.db.execute_query(
            """
            SELECT * FROM payments
            WHERE subscription_id = ? AND subscription_type = ?
            ORDER BY created_at DESC, id DESC
            """,
            [subscription_id, subscription_type.value],
        )
        return [Payment(**row) for row in rows]

    def list_owned_payments(self, user_id: int, subscription_id: int,
                            subscription_type: SubscriptionType) -> List[Payment]:
        self._find_owned(user_id, subscription_id, subscription_type)
        return self.list_payments(subscription_id, subscription_type)

    def get_payment(self, payment_id: int) -> Optional[Payment]:
        row = self.db.execute_one("SELECT * FROM payments WHERE id = ?", [payment_id])
        return Payment(**row) if row else None

    def _find_owned(self, user_id: int, subscription_id: int, subscription_type: SubscriptionType):
        if subscription_type == SubscriptionType.MONTHLY:
            return self.bundles.find_owned_bundle(user_id, subscription_id)
        return self.subscriptions.find_owned(user_id, subscription_id)

    def _chargeable_amount(self, user_id: int, subscription_id: int,
                           subscription_type: SubscriptionType) -> Decimal:
        """校验订阅可以扣款，返回默认扣款金额"""
        if subscription_type == SubscriptionType.MONTHLY:
            bundle = self.bundles.find_owned_bundle(user_id, subscription_id)
            status, price = bundle.status, bundle.total_price
        else:
            subscription = self.subscriptions.find_owned(user_id, subscription_id)
            if subscription.is_bundle_member:
                raise BundleMemberError(subscription_id, subscription.monthly_subscription_id)
            status, price = subscription.status, subscription.price

        if status != SubscriptionStatus.PENDING:
            raise InvalidTransitionError(subscription_id, status.value, SubscriptionStatus.ACTIVE.value)
        return price

    def _insert_payment(self, user_id: int, subscription_id: int,
                        subscription_type: SubscriptionType, amount: Decimal,
                        payment_method: PaymentMethod, details: PaymentDetails) -> int:
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                INSERT INTO payments(
                    user_id, subscription_id, subscription_type, amount, status,
                    payment_method, payment_details, created_at
                ) VALUES (?,?,?,?,?,?,?,?) RETURNING id
                """,
                [
                    user_id, subscription_id, subscription_type.value, amount,
                    PaymentStatus.PENDING.value, payment_method.value,
                    details.to_json(), datetime.now(),
                ],
            ).fetchone()
            return row[0]

    def _mark_failed(self, payment_id: int, reason: str, details: PaymentDetails = None):
        details = (details or PaymentDetails(currency=settings.currency)).model_copy(
            update={"failure_reason": reason}
        )
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                UPDATE payments SET status = ?, payment_details = ?
                WHERE id = ? AND status = ?
                RETURNING user_id, subscription_id, subscription_type
                """,
                [PaymentStatus.FAILED.value, details.to_json(), payment_id, PaymentStatus.PENDING.value],
            ).fetchone()
            if row is None:
                return
            user_id, subscription_id, subscription_type = row
            self._log_payment_operation(conn, user_id, payment_id, "failed", {"reason": reason})
            self.events.emit(EventType.PAYMENT_FAILED, {
                "user_id": user_id,
                "payment_id": payment_id,
                "subscription_id": subscription_id,
                "subscription_type": subscription_type,
                "reason": reason,
            })

    def _reverse_capture(self, payment_id: int, transaction_ref: str, amount: Decimal, reason: str):
        """扣款成功但激活失败时退回款项，并把支付记录为失败"""
        logger.warning("Reversing captured payment %s: %s", payment_id, reason)
        try:
            refund = self.processor.refund(transaction_ref, amount)
            if not refund.success:
                logger.error("Failed to reverse payment %s (%s): %s", payment_id, transaction_ref, refund.message)
        except Exception:
            logger.error("Failed to reverse payment %s (%s)", payment_id, transaction_ref, exc_info=True)
        self._mark_failed(
            payment_id, f"reversed: {reason}",
            PaymentDetails(currency=settings.currency, transaction_ref=transaction_ref),
        )

    def _log_payment_operation(self, conn, user_id: int, payment_id: int,
                               operation: str, detail: Dict[str, Any] = None):
        """记录支付操作日志"""
        log_detail = {"payment_id": payment_id}
        log_detail.update(detail or {})
        conn.execute(
            "INSERT INTO logs(user_id, actor_id, action, detail_json) VALUES (?,?,?,?)",
            [user_id, user_id, f"payment_{operation}", json.dumps(log_detail, ensure_ascii=False)],
        )

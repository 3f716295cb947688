"""
自定义异常类
提供更精确的错误处理和异常信息

分类：
- 验证错误：请求在任何写操作之前被拒绝
- 业务规则错误：调用方可以预期并自行处理的情况，不作为系统故障记录
- 支付处理错误：记录为失败的支付，不由系统自动重试
- 完整性错误：级联状态不一致，视为致命错误
"""

from typing import Any, Dict


class BaseApplicationError(Exception):
    """应用基础异常类"""

    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str = None,
        details: Dict[str, Any] = None
    ):
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}
        super().__init__(self.message)


class DatabaseError(BaseApplicationError):
    """数据库相关异常"""
    default_code = "DATABASE_ERROR"


class ConcurrencyError(BaseApplicationError):
    """并发控制错误"""
    default_code = "CONCURRENCY_CONFLICT"


class AuthenticationError(BaseApplicationError):
    """认证相关异常"""
    default_code = "AUTHENTICATION_REQUIRED"


class ValidationError(BaseApplicationError):
    """数据验证异常"""
    default_code = "VALIDATION_ERROR"


class InvalidBundleSizeError(ValidationError):
    """月度订阅的商家数量超出 1-4 的范围"""
    default_code = "INVALID_BUNDLE_SIZE"

    def __init__(self, size: int, maximum: int = 4):
        super().__init__(
            f"月度订阅需要选择 1 到 {maximum} 个商家，当前为 {size} 个",
            details={"size": size, "max": maximum},
        )


class NotFoundError(BaseApplicationError):
    """资源不存在"""
    default_code = "RESOURCE_NOT_FOUND"


class SubscriptionNotFoundError(NotFoundError):
    """订阅不存在（或不属于当前用户）"""
    default_code = "SUBSCRIPTION_NOT_FOUND"

    def __init__(self, subscription_id: int):
        super().__init__("订阅不存在", details={"subscription_id": subscription_id})


class MenuNotFoundError(NotFoundError):
    """菜单不存在"""
    default_code = "MENU_NOT_FOUND"

    def __init__(self, vendor_id: int, menu_id: int):
        super().__init__(
            "菜单不存在",
            details={"vendor_id": vendor_id, "menu_id": menu_id},
        )


class VendorNotFoundError(NotFoundError):
    """商家不存在"""
    default_code = "VENDOR_NOT_FOUND"

    def __init__(self, vendor_id: int):
        super().__init__("商家不存在", details={"vendor_id": vendor_id})


class BusinessRuleError(BaseApplicationError):
    """业务规则错误"""
    default_code = "BUSINESS_RULE_VIOLATION"


class CapacityExceededError(BusinessRuleError):
    """商家本期订阅容量已满"""
    default_code = "CAPACITY_EXCEEDED"

    def __init__(self, vendor_id: int):
        super().__init__("商家本期订阅容量已满", details={"vendor_id": vendor_id})


class ConflictingSubscriptionError(BusinessRuleError):
    """同一商家同一餐别在重叠周期内已有生效订阅"""
    default_code = "CONFLICTING_SUBSCRIPTION"

    def __init__(self, vendor_id: int, conflicting_ids):
        super().__init__(
            "该商家在此期间已有生效中的同餐别订阅",
            details={"vendor_id": vendor_id, "conflicting_subscription_ids": list(conflicting_ids)},
        )


class AlreadyExpiredError(BusinessRuleError):
    """订阅已过结束日期，无法取消"""
    default_code = "ALREADY_EXPIRED"

    def __init__(self, subscription_id: int, end_date):
        super().__init__(
            "订阅已过期，无法取消",
            details={"subscription_id": subscription_id, "end_date": str(end_date)},
        )


class InvalidTransitionError(BusinessRuleError):
    """状态转换不合法"""
    default_code = "INVALID_TRANSITION"

    def __init__(self, subscription_id: int, current: str, target: str):
        super().__init__(
            f"无法从 {current} 转换到 {target}",
            details={
                "subscription_id": subscription_id,
                "current_status": current,
                "target_status": target,
            },
        )


class NothingToRefundError(BusinessRuleError):
    """没有可退款的已完成支付"""
    default_code = "NOTHING_TO_REFUND"

    def __init__(self, subscription_id: int):
        super().__init__(
            "没有已完成的支付可以退款",
            details={"subscription_id": subscription_id},
        )


class InvalidReferenceError(BusinessRuleError):
    """菜单与商家不匹配"""
    default_code = "INVALID_REFERENCE"

    def __init__(self, vendor_id: int, menu_id: int):
        super().__init__(
            "菜单不属于指定商家",
            details={"vendor_id": vendor_id, "menu_id": menu_id},
        )


class BundleMemberError(BusinessRuleError):
    """月度订阅的成员订阅不能单独操作"""
    default_code = "BUNDLE_MEMBER"

    def __init__(self, subscription_id: int, monthly_subscription_id: int):
        super().__init__(
            "该订阅属于月度订阅，请对月度订阅进行操作",
            details={
                "subscription_id": subscription_id,
                "monthly_subscription_id": monthly_subscription_id,
            },
        )


class PaymentProcessorError(BaseApplicationError):
    """支付网关不可用或拒绝"""
    default_code = "PAYMENT_PROCESSOR_ERROR"


class PaymentDeclinedError(BaseApplicationError):
    """支付未成功（已记录为失败的支付）"""
    default_code = "PAYMENT_DECLINED"

    def __init__(self, payment_id: int, reason: str = None):
        super().__init__(
            "支付失败",
            details={"payment_id": payment_id, "reason": reason},
        )


class IntegrityViolationError(BaseApplicationError):
    """级联状态不一致，属于致命错误"""
    default_code = "INTEGRITY_VIOLATION"

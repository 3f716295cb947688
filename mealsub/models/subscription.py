"""
订阅相关数据模型
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List
from enum import Enum
from .base import BaseEntity, TimestampMixin, parse_json_list
from ..core.exceptions import ValidationError as AppValidationError


class MealType(str, Enum):
    """餐别枚举"""
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"


class SubscriptionStatus(str, Enum):
    """订阅状态枚举"""
    PENDING = "pending"       # 待支付
    ACTIVE = "active"         # 生效中
    PAUSED = "paused"         # 暂停（仅兼容历史数据）
    CANCELLED = "cancelled"   # 已取消
    COMPLETED = "completed"   # 已完成
    EXPIRED = "expired"       # 已过期
    FAILED = "failed"         # 支付失败/放弃


TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.FAILED,
    SubscriptionStatus.COMPLETED,
})

# 合法的状态转换
VALID_TRANSITIONS = {
    SubscriptionStatus.PENDING: {SubscriptionStatus.ACTIVE, SubscriptionStatus.FAILED},
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED},
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in VALID_TRANSITIONS.get(SubscriptionStatus(current), set())


class DateRange(BaseModel):
    """订阅周期，开始日期必须早于结束日期"""
    start_date: date = Field(..., description="开始日期")
    end_date: date = Field(..., description="结束日期")

    @model_validator(mode="after")
    def check_order(self):
        if self.start_date >= self.end_date:
            raise ValueError("开始日期必须早于结束日期")
        return self

    @classmethod
    def of(cls, start_date: date, end_date: date) -> "DateRange":
        """构造周期，顺序错误时抛出业务层的 ValidationError"""
        if start_date >= end_date:
            raise AppValidationError(
                "开始日期必须早于结束日期",
                details={"start_date": str(start_date), "end_date": str(end_date)},
            )
        return cls(start_date=start_date, end_date=end_date)


class MealSubscription(BaseEntity, TimestampMixin):
    """单商家订阅"""
    id: int = Field(..., description="订阅ID")
    user_id: int = Field(..., description="用户ID")
    vendor_id: int = Field(..., description="商家ID")
    menu_id: int = Field(..., description="菜单ID")
    meal_type: MealType = Field(..., description="餐别")
    price: Decimal = Field(..., description="锁定价格")
    status: SubscriptionStatus = Field(..., description="订阅状态")
    start_date: date = Field(..., description="开始日期")
    end_date: date = Field(..., description="结束日期")
    monthly_subscription_id: Optional[int] = Field(None, description="所属月度订阅ID")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_bundle_member(self) -> bool:
        return self.monthly_subscription_id is not None


class MonthlySubscription(BaseEntity, TimestampMixin):
    """月度订阅：1-4 个商家的订阅一起计费"""
    id: int = Field(..., description="月度订阅ID")
    user_id: int = Field(..., description="用户ID")
    vendor_ids: List[int] = Field(..., min_length=1, max_length=4, description="商家ID列表")
    member_subscription_ids: List[int] = Field(..., description="成员订阅ID列表，与商家一一对应")
    meal_type: MealType = Field(..., description="餐别")
    total_price: Decimal = Field(..., description="总价")
    status: SubscriptionStatus = Field(..., description="订阅状态")
    start_date: date = Field(..., description="开始日期")
    end_date: date = Field(..., description="结束日期")
    address_id: str = Field(..., description="配送地址ID")
    payment_id: Optional[int] = Field(None, description="成功支付的ID")

    @field_validator("vendor_ids", "member_subscription_ids", mode="before")
    @classmethod
    def parse_ids(cls, v):
        return parse_json_list(v)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class BundleCancelResult(BaseModel):
    """月度订阅取消结果"""
    bundle: MonthlySubscription
    cancelled_member_ids: List[int] = Field(default_factory=list)
    skipped_member_ids: List[int] = Field(default_factory=list)


class BundleStats(BaseModel):
    """月度订阅成员统计"""
    total_subscriptions: int
    active_subscriptions: int
    total_value: Decimal
    vendor_count: int


class VendorSelectionCheck(BaseModel):
    """月度订阅预检中单个商家的检查结果"""
    vendor_id: int
    menu_id: int
    price: Optional[Decimal] = None
    has_capacity: bool = False
    available_slots: int = 0
    issues: List[str] = Field(default_factory=list)


class SelectionValidation(BaseModel):
    """月度订阅预检结果，不写入任何数据"""
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    vendors: List[VendorSelectionCheck] = Field(default_factory=list)
    total_price: Decimal = Decimal("0.00")
    validated_at: datetime

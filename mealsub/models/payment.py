"""
支付相关数据模型
"""

import json
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional
from enum import Enum
from .base import BaseEntity


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    """支付方式枚举"""
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    UPI = "upi"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"


class SubscriptionType(str, Enum):
    """支付关联的订阅类型"""
    SINGLE = "single"     # meal_subscriptions
    MONTHLY = "monthly"   # monthly_subscriptions


class PaymentDetails(BaseModel):
    """
    支付附加信息

    只接受下列键，未知键直接拒绝：
    - transactionRef: 支付网关交易号
    - currency: 币种
    - refundReason: 退款原因
    - originalPaymentId: 退款对应的原支付ID
    - refundRef: 支付网关退款单号
    - failureReason: 失败原因
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    transaction_ref: Optional[str] = Field(None, alias="transactionRef")
    currency: Optional[str] = None
    refund_reason: Optional[str] = Field(None, alias="refundReason")
    original_payment_id: Optional[int] = Field(None, alias="originalPaymentId")
    refund_ref: Optional[str] = Field(None, alias="refundRef")
    failure_reason: Optional[str] = Field(None, alias="failureReason")

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True), ensure_ascii=False)


class Payment(BaseEntity):
    """支付记录（只追加）"""
    id: int = Field(..., description="支付ID")
    user_id: int = Field(..., description="用户ID")
    subscription_id: int = Field(..., description="订阅ID")
    subscription_type: SubscriptionType = Field(..., description="订阅类型")
    amount: Decimal = Field(..., description="金额，负数为退款")
    status: PaymentStatus = Field(..., description="支付状态")
    payment_method: PaymentMethod = Field(..., description="支付方式")
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails, description="附加信息")
    created_at: Optional[datetime] = Field(None, description="创建时间")
    paid_at: Optional[datetime] = Field(None, description="完成时间")

    @field_validator("payment_details", mode="before")
    @classmethod
    def parse_details(cls, v):
        if v is None:
            return PaymentDetails()
        if isinstance(v, str):
            return PaymentDetails.model_validate(json.loads(v))
        return v


class PaymentSummary(BaseModel):
    """支付汇总"""
    total_paid: Decimal = Field(..., description="已支付总额")
    total_refunded: Decimal = Field(..., description="已退款总额")
    net_amount: Decimal = Field(..., description="净额")
    payment_count: int = Field(..., description="支付次数（不含退款）")
    last_payment_date: Optional[datetime] = Field(None, description="最近一次支付时间")
    payment_status: PaymentStatus = Field(..., description="整体支付状态")

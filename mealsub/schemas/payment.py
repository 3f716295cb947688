"""
支付相关的请求模式
"""

from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional
from ..models.payment import PaymentMethod


class ChargeRequest(BaseModel):
    """扣款请求"""
    payment_method: PaymentMethod = Field(..., description="支付方式")
    amount: Optional[Decimal] = Field(None, description="扣款金额，可省略；给出时必须等于订阅价格")


class RefundRequest(BaseModel):
    """退款请求"""
    amount: Decimal = Field(..., description="退款金额")
    reason: Optional[str] = Field(None, max_length=500, description="退款原因")

"""
订阅相关的请求/响应模式
"""

from pydantic import BaseModel, Field
from datetime import date
from decimal import Decimal
from typing import List, Optional
from ..models.subscription import MealType


class SubscriptionCreateRequest(BaseModel):
    """订阅创建请求"""
    vendor_id: int = Field(..., description="商家ID")
    menu_id: int = Field(..., description="菜单ID")
    start_date: date = Field(..., description="开始日期")
    end_date: date = Field(..., description="结束日期")


class VendorMenuItem(BaseModel):
    """月度订阅中的一个商家及其菜单"""
    vendor_id: int = Field(..., description="商家ID")
    menu_id: int = Field(..., description="菜单ID")


class MonthlySubscriptionCreateRequest(BaseModel):
    """月度订阅创建请求，商家数量由服务层校验"""
    items: List[VendorMenuItem] = Field(..., description="商家与菜单")
    meal_type: MealType = Field(..., description="餐别")
    start_date: date = Field(..., description="开始日期")
    end_date: date = Field(..., description="结束日期")
    address_id: str = Field(..., description="配送地址ID")


class VendorCapacityResponse(BaseModel):
    """商家容量响应"""
    vendor_id: int = Field(..., description="商家ID")
    start_date: date = Field(..., description="开始日期")
    end_date: date = Field(..., description="结束日期")
    monthly_capacity: int = Field(..., description="月度容量")
    available_slots: int = Field(..., description="剩余名额")
    has_capacity: bool = Field(..., description="是否还能订阅")


class BundleStatsResponse(BaseModel):
    """月度订阅统计响应"""
    monthly_subscription_id: int
    total_subscriptions: int
    active_subscriptions: int
    total_value: Decimal
    vendor_count: int


class MonthlySelectionValidateRequest(BaseModel):
    """月度订阅预检请求"""
    items: List[VendorMenuItem] = Field(..., description="商家与菜单")
    meal_type: MealType = Field(..., description="餐别")
    start_date: date = Field(..., description="开始日期")
    end_date: date = Field(..., description="结束日期")

"""
订阅路由模块
单商家订阅的创建、查询、取消以及支付
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional

from ...schemas.subscription import SubscriptionCreateRequest
from ...schemas.payment import ChargeRequest, RefundRequest
from ...core.security import get_current_user_id
from ...core.error_handler import create_success_response
from ...models.base import PaginationParams
from ...models.payment import SubscriptionType
from ...models.subscription import DateRange, MealType, SubscriptionStatus
from ...services import ServiceContainer, get_services

router = APIRouter()


@router.post("")
def create_subscription(req: SubscriptionCreateRequest,
                        user_id: int = Depends(get_current_user_id),
                        services: ServiceContainer = Depends(get_services)):
    """创建订阅（待支付）"""
    date_range = DateRange.of(req.start_date, req.end_date)
    subscription = services.subscriptions.create(user_id, req.vendor_id, req.menu_id, date_range)
    return create_success_response(subscription.model_dump(mode="json"), "订阅创建成功")


@router.get("")
def list_subscriptions(status: Optional[SubscriptionStatus] = None,
                       meal_type: Optional[MealType] = None,
                       page: int = Query(1, ge=1),
                       size: int = Query(10, ge=1, le=100),
                       user_id: int = Depends(get_current_user_id),
                       services: ServiceContainer = Depends(get_services)):
    """分页查询我的订阅"""
    result = services.subscriptions.list_for_user(
        user_id, PaginationParams(page=page, size=size), status=status, meal_type=meal_type
    )
    return create_success_response(result.model_dump(mode="json"), "查询成功")


@router.get("/{subscription_id}")
def get_subscription(subscription_id: int,
                     user_id: int = Depends(get_current_user_id),
                     services: ServiceContainer = Depends(get_services)):
    subscription = services.subscriptions.find_owned(user_id, subscription_id)
    return create_success_response(subscription.model_dump(mode="json"), "查询成功")


@router.post("/{subscription_id}/cancel")
def cancel_subscription(subscription_id: int,
                        user_id: int = Depends(get_current_user_id),
                        services: ServiceContainer = Depends(get_services)):
    """取消生效中的订阅"""
    subscription = services.subscriptions.cancel(user_id, subscription_id)
    return create_success_response(subscription.model_dump(mode="json"), "订阅已取消")


@router.post("/{subscription_id}/abandon")
def abandon_subscription(subscription_id: int,
                         user_id: int = Depends(get_current_user_id),
                         services: ServiceContainer = Depends(get_services)):
    """放弃未支付的订阅"""
    subscription = services.subscriptions.fail(user_id, subscription_id)
    return create_success_response(subscription.model_dump(mode="json"), "订阅已放弃")


@router.post("/{subscription_id}/payments")
def charge_subscription(subscription_id: int, req: ChargeRequest,
                        user_id: int = Depends(get_current_user_id),
                        services: ServiceContainer = Depends(get_services)):
    """支付订阅，成功后订阅生效"""
    payment = services.payments.charge(
        user_id, subscription_id, SubscriptionType.SINGLE, req.payment_method, req.amount
    )
    return create_success_response(payment.model_dump(mode="json"), "支付成功")


@router.get("/{subscription_id}/payments")
def list_subscription_payments(subscription_id: int,
                               user_id: int = Depends(get_current_user_id),
                               services: ServiceContainer = Depends(get_services)):
    payments = services.payments.list_owned_payments(user_id, subscription_id, SubscriptionType.SINGLE)
    return create_success_response([p.model_dump(mode="json") for p in payments], "查询成功")


@router.get("/{subscription_id}/payments/summary")
def subscription_payment_summary(subscription_id: int,
                                 user_id: int = Depends(get_current_user_id),
                                 services: ServiceContainer = Depends(get_services)):
    summary = services.payments.summarize_owned(user_id, subscription_id, SubscriptionType.SINGLE)
    return create_success_response(summary.model_dump(mode="json"), "查询成功")


@router.post("/{subscription_id}/refunds")
def refund_subscription(subscription_id: int, req: RefundRequest,
                        user_id: int = Depends(get_current_user_id),
                        services: ServiceContainer = Depends(get_services)):
    """退款"""
    payment = services.payments.refund(
        user_id, subscription_id, SubscriptionType.SINGLE, req.amount, req.reason
    )
    return create_success_response(payment.model_dump(mode="json"), "退款成功")

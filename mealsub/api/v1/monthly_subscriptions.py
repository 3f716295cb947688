"""
月度订阅路由模块
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional

from ...schemas.subscription import (
    BundleStatsResponse,
    MonthlySelectionValidateRequest,
    MonthlySubscriptionCreateRequest,
)
from ...schemas.payment import ChargeRequest, RefundRequest
from ...core.security import get_current_user_id
from ...core.error_handler import create_success_response
from ...models.base import PaginationParams
from ...models.payment import SubscriptionType
from ...models.subscription import DateRange, SubscriptionStatus
from ...services import ServiceContainer, VendorMenuPair, get_services

router = APIRouter()


@router.post("")
def create_monthly_subscription(req: MonthlySubscriptionCreateRequest,
                                user_id: int = Depends(get_current_user_id),
                                services: ServiceContainer = Depends(get_services)):
    """创建月度订阅，所有成员一起创建"""
    date_range = DateRange.of(req.start_date, req.end_date)
    pairs = [VendorMenuPair(item.vendor_id, item.menu_id) for item in req.items]
    bundle = services.bundles.create_bundle(user_id, pairs, req.meal_type, date_range, req.address_id)
    return create_success_response(bundle.model_dump(mode="json"), "月度订阅创建成功")


@router.post("/validate")
def validate_monthly_selection(req: MonthlySelectionValidateRequest,
                               user_id: int = Depends(get_current_user_id),
                               services: ServiceContainer = Depends(get_services)):
    """月度订阅预检，只返回检查结果，不创建订阅"""
    date_range = DateRange.of(req.start_date, req.end_date)
    pairs = [VendorMenuPair(item.vendor_id, item.menu_id) for item in req.items]
    result = services.bundles.validate_selection(user_id, pairs, req.meal_type, date_range)
    return create_success_response(result.model_dump(mode="json"), "预检完成")


@router.get("")
def list_monthly_subscriptions(status: Optional[SubscriptionStatus] = None,
                               page: int = Query(1, ge=1),
                               size: int = Query(10, ge=1, le=100),
                               user_id: int = Depends(get_current_user_id),
                               services: ServiceContainer = Depends(get_services)):
    result = services.bundles.list_bundles_for_user(
        user_id, PaginationParams(page=page, size=size), status=status
    )
    return create_success_response(result.model_dump(mode="json"), "查询成功")


@router.get("/{bundle_id}")
def get_monthly_subscription(bundle_id: int,
                             user_id: int = Depends(get_current_user_id),
                             services: ServiceContainer = Depends(get_services)):
    bundle = services.bundles.find_owned_bundle(user_id, bundle_id)
    return create_success_response(bundle.model_dump(mode="json"), "查询成功")


@router.get("/{bundle_id}/stats")
def get_monthly_subscription_stats(bundle_id: int,
                                   user_id: int = Depends(get_current_user_id),
                                   services: ServiceContainer = Depends(get_services)):
    """成员订阅统计"""
    stats = services.bundles.bundle_stats(user_id, bundle_id)
    response = BundleStatsResponse(monthly_subscription_id=bundle_id, **stats.model_dump())
    return create_success_response(response.model_dump(mode="json"), "查询成功")


@router.post("/{bundle_id}/cancel")
def cancel_monthly_subscription(bundle_id: int,
                                user_id: int = Depends(get_current_user_id),
                                services: ServiceContainer = Depends(get_services)):
    """取消月度订阅，已结束的成员会被跳过"""
    result = services.bundles.cancel_bundle(user_id, bundle_id)
    return create_success_response(result.model_dump(mode="json"), "月度订阅已取消")


@router.post("/{bundle_id}/abandon")
def abandon_monthly_subscription(bundle_id: int,
                                 user_id: int = Depends(get_current_user_id),
                                 services: ServiceContainer = Depends(get_services)):
    bundle = services.bundles.fail_bundle(user_id, bundle_id)
    return create_success_response(bundle.model_dump(mode="json"), "月度订阅已放弃")


@router.post("/{bundle_id}/payments")
def charge_monthly_subscription(bundle_id: int, req: ChargeRequest,
                                user_id: int = Depends(get_current_user_id),
                                services: ServiceContainer = Depends(get_services)):
    """支付月度订阅，成功后所有成员一起生效"""
    payment = services.payments.charge(
        user_id, bundle_id, SubscriptionType.MONTHLY, req.payment_method, req.amount
    )
    return create_success_response(payment.model_dump(mode="json"), "支付成功")


@router.get("/{bundle_id}/payments")
def list_monthly_subscription_payments(bundle_id: int,
                                       user_id: int = Depends(get_current_user_id),
                                       services: ServiceContainer = Depends(get_services)):
    payments = services.payments.list_owned_payments(user_id, bundle_id, SubscriptionType.MONTHLY)
    return create_success_response([p.model_dump(mode="json") for p in payments], "查询成功")


@router.get("/{bundle_id}/payments/summary")
def monthly_subscription_payment_summary(bundle_id: int,
                                         user_id: int = Depends(get_current_user_id),
                                         services: ServiceContainer = Depends(get_services)):
    summary = services.payments.summarize_owned(user_id, bundle_id, SubscriptionType.MONTHLY)
    return create_success_response(summary.model_dump(mode="json"), "查询成功")


@router.post("/{bundle_id}/refunds")
def refund_monthly_subscription(bundle_id: int, req: RefundRequest,
                                user_id: int = Depends(get_current_user_id),
                                services: ServiceContainer = Depends(get_services)):
    payment = services.payments.refund(
        user_id, bundle_id, SubscriptionType.MONTHLY, req.amount, req.reason
    )
    return create_success_response(payment.model_dump(mode="json"), "退款成功")

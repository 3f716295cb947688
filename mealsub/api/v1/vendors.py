"""
商家路由模块
只提供容量查询，菜单维护不在本服务中
"""

from fastapi import APIRouter, Depends, Query
from datetime import date

from ...schemas.subscription import VendorCapacityResponse
from ...core.error_handler import create_success_response
from ...core.security import get_open_id
from ...models.subscription import DateRange
from ...services import ServiceContainer, get_services

router = APIRouter()


@router.get("/{vendor_id}/capacity")
def get_vendor_capacity(vendor_id: int,
                        start_date: date = Query(..., description="开始日期"),
                        end_date: date = Query(..., description="结束日期"),
                        open_id: str = Depends(get_open_id),
                        services: ServiceContainer = Depends(get_services)):
    """查询商家在周期内的剩余名额"""
    period = DateRange.of(start_date, end_date)
    available = services.capacity.available_slots(vendor_id, period)
    response = VendorCapacityResponse(
        vendor_id=vendor_id,
        start_date=start_date,
        end_date=end_date,
        monthly_capacity=services.vendors.get_monthly_capacity(vendor_id),
        available_slots=available,
        has_capacity=available > 0,
    )
    return create_success_response(response.model_dump(mode="json"), "查询成功")

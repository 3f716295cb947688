"""
管理路由模块
"""

from fastapi import APIRouter, Depends, Request

from ...core.error_handler import create_success_response
from ...core.security import check_admin_permission

router = APIRouter()


@router.post("/sweeps/expiration")
def trigger_expiration_sweep(request: Request, admin_id: int = Depends(check_admin_permission)):
    """手动触发一次过期扫描"""
    report = request.app.state.scheduler.run_now()
    return create_success_response(report.to_dict(), "过期扫描完成")

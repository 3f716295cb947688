"""
统一错误处理模块
提供标准化的错误响应格式和异常处理器

主要功能：
- 统一的错误响应格式 {success, error_code, message, details}
- 错误代码到HTTP状态码的映射
- 未知异常写入系统日志
- 业务规则错误不作为系统故障记录
"""

import json
import logging
import traceback
from typing import Dict, Any, Optional
from fastapi import Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from .exceptions import BaseApplicationError
from .database import DatabaseManager, db_manager

logger = logging.getLogger(__name__)


class ErrorResponse:
    """标准错误响应格式"""

    def __init__(self, error_code: str, message: str,
                 details: Optional[Dict[str, Any]] = None,
                 http_status: int = 400):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典格式"""
        return {
            "success": False,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }

    def to_json_response(self) -> JSONResponse:
        """转换为FastAPI JSONResponse"""
        return JSONResponse(
            status_code=self.http_status,
            content=self.to_dict()
        )


class ErrorHandler:
    """全局错误处理器"""

    # 错误代码到HTTP状态码的映射
    ERROR_CODE_STATUS_MAP = {
        "VALIDATION_ERROR": 400,
        "INVALID_BUNDLE_SIZE": 400,
        "AUTHENTICATION_REQUIRED": 401,
        "PAYMENT_DECLINED": 402,
        "PERMISSION_DENIED": 403,
        "RESOURCE_NOT_FOUND": 404,
        "SUBSCRIPTION_NOT_FOUND": 404,
        "MENU_NOT_FOUND": 404,
        "VENDOR_NOT_FOUND": 404,
        "CONCURRENCY_CONFLICT": 409,
        "INTERNAL_ERROR": 500,
        "DATABASE_ERROR": 500,
        "INTEGRITY_VIOLATION": 500,
        "PAYMENT_PROCESSOR_ERROR": 502,

        # 业务规则错误
        "BUSINESS_RULE_VIOLATION": 409,
        "CAPACITY_EXCEEDED": 409,
        "CONFLICTING_SUBSCRIPTION": 409,
        "ALREADY_EXPIRED": 409,
        "INVALID_TRANSITION": 409,
        "NOTHING_TO_REFUND": 409,
        "INVALID_REFERENCE": 409,
        "BUNDLE_MEMBER": 409,
    }

    @classmethod
    def handle_application_error(cls, error: BaseApplicationError) -> ErrorResponse:
        """处理应用业务异常"""
        http_status = cls.ERROR_CODE_STATUS_MAP.get(error.error_code, 400)
        if http_status >= 500:
            logger.error("%s: %s %s", error.error_code, error.message, error.details)

        return ErrorResponse(
            error_code=error.error_code,
            message=error.message,
            details=error.details,
            http_status=http_status
        )

    @classmethod
    def handle_http_exception(cls, error: HTTPException) -> ErrorResponse:
        """处理FastAPI HTTP异常"""
        return ErrorResponse(
            error_code="HTTP_ERROR",
            message=str(error.detail),
            details={"status_code": error.status_code},
            http_status=error.status_code
        )

    @classmethod
    def handle_validation_error(cls, error: RequestValidationError) -> ErrorResponse:
        """处理Pydantic验证错误"""
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="请求参数验证失败",
            details={"validation_errors": json.loads(json.dumps(error.errors(), default=str))},
            http_status=422
        )

    @classmethod
    def handle_unknown_error(cls, error: Exception, db: DatabaseManager) -> ErrorResponse:
        """处理未知异常"""
        error_details = {
            "type": type(error).__name__,
            "message": str(error),
            "traceback": traceback.format_exc()
        }
        logger.error("Unhandled error: %s", error, exc_info=error)
        cls._log_system_error(error_details, db)

        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="系统内部错误",
            details={"error_type": type(error).__name__},
            http_status=500
        )

    @classmethod
    def _log_system_error(cls, error_details: Dict[str, Any], db: DatabaseManager):
        """记录系统错误到数据库"""
        try:
            db.execute_query(
                "INSERT INTO logs(user_id, actor_id, action, detail_json) VALUES (?,?,?,?)",
                [None, None, "system_error", json.dumps(error_details, ensure_ascii=False)]
            )
        except Exception:
            logger.exception("Failed to write system error to logs table")


async def application_error_handler(request: Request, exc: BaseApplicationError) -> JSONResponse:
    """应用异常处理器"""
    return ErrorHandler.handle_application_error(exc).to_json_response()


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """HTTP异常处理器"""
    return ErrorHandler.handle_http_exception(exc).to_json_response()


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """验证异常处理器"""
    return ErrorHandler.handle_validation_error(exc).to_json_response()


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """通用异常处理器"""
    db = getattr(request.app.state, "db", db_manager)
    return ErrorHandler.handle_unknown_error(exc, db).to_json_response()


def create_success_response(data: Any = None, message: str = "操作成功") -> Dict[str, Any]:
    """创建标准成功响应"""
    response = {
        "success": True,
        "message": message
    }

    if data is not None:
        response["data"] = data

    return response

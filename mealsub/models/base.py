"""
基础数据模型
定义通用的模型基类和常用字段
"""

import json
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, Any, List


class TimestampMixin(BaseModel):
    """时间戳混入类"""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BaseEntity(BaseModel):
    """基础实体模型"""

    model_config = {"from_attributes": True}


class PaginationParams(BaseModel):
    """分页参数"""
    page: int = Field(default=1, ge=1, description="页码")
    size: int = Field(default=10, ge=1, le=100, description="每页大小")

    @property
    def offset(self) -> int:
        """计算偏移量"""
        return (self.page - 1) * self.size


class PaginatedResponse(BaseModel):
    """分页响应"""
    items: list[Any]
    total: int
    page: int
    size: int
    pages: int

    @classmethod
    def create(cls, items: list, total: int, pagination: PaginationParams):
        """创建分页响应"""
        pages = (total + pagination.size - 1) // pagination.size
        return cls(
            items=items,
            total=total,
            page=pagination.page,
            size=pagination.size,
            pages=pages
        )


def parse_json_list(value: Any) -> List[Any]:
    """DuckDB 的 JSON 列以字符串返回，这里统一解析为列表"""
    if value is None:
        return []
    if isinstance(value, str):
        return json.loads(value)
    return list(value)

"""
商家与菜单目录
核心业务只读取这两张表，不负责维护它们的内容
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..config.settings import settings
from ..core.database import DatabaseManager, db_manager
from ..core.exceptions import VendorNotFoundError
from ..models.subscription import DateRange, MealType


@dataclass(frozen=True)
class MenuInfo:
    menu_id: int
    vendor_id: int
    meal_type: MealType
    price: Decimal
    status: str


class MenuDirectory:
    """菜单目录"""

    def __init__(self, db: DatabaseManager = None):
        self.db = db or db_manager

    def get_menu(self, vendor_id: int, menu_id: int) -> Optional[MenuInfo]:
        """
        按菜单ID查询菜单

        返回的 vendor_id 是菜单真正所属的商家，调用方自行比较；
        菜单不存在时返回 None。
        """
        row = self.db.execute_one(
            "SELECT id, vendor_id, meal_type, price, status FROM vendor_menus WHERE id = ?",
            [menu_id],
        )
        if not row:
            return None
        return MenuInfo(
            menu_id=row["id"],
            vendor_id=row["vendor_id"],
            meal_type=MealType(row["meal_type"]),
            price=Decimal(row["price"]),
            status=row["status"],
        )


class VendorDirectory:
    """商家目录"""

    def __init__(self, db: DatabaseManager = None):
        self.db = db or db_manager

    def get_monthly_capacity(self, vendor_id: int) -> int:
        row = self.db.execute_one(
            "SELECT monthly_capacity FROM vendors WHERE id = ?", [vendor_id]
        )
        if not row:
            raise VendorNotFoundError(vendor_id)
        capacity = row["monthly_capacity"]
        return capacity if capacity is not None else settings.default_vendor_capacity

    def count_active_subscriptions(self, vendor_id: int, period: DateRange) -> int:
        """统计与周期重叠、仍占用名额（待支付或生效中）的订阅数"""
        row = self.db.execute_one(
            """
            SELECT COUNT(*) AS cnt
            FROM meal_subscriptions
            WHERE vendor_id = ?
              AND status IN ('pending', 'active')
              AND start_date <= ?
              AND end_date >= ?
            """,
            [vendor_id, period.end_date, period.start_date],
        )
        return row["cnt"] if row else 0

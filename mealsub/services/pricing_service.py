"""
菜单定价
在创建订阅时把菜单价格锁定下来
"""

from decimal import Decimal

from ..core.exceptions import MenuNotFoundError
from .directory_service import MenuDirectory


class PricingService:
    """菜单定价服务"""

    def __init__(self, menus: MenuDirectory = None):
        self.menus = menus or MenuDirectory()

    def resolve_price(self, vendor_id: int, menu_id: int) -> Decimal:
        """返回菜单价格；菜单不存在或不属于该商家时抛出 MenuNotFoundError"""
        menu = self.menus.get_menu(vendor_id, menu_id)
        if menu is None or menu.vendor_id != vendor_id:
            raise MenuNotFoundError(vendor_id, menu_id)
        return menu.price.quantize(Decimal("0.01"))

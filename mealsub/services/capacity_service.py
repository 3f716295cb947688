"""
商家容量检查
"""

from ..models.subscription import DateRange
from .directory_service import VendorDirectory


class CapacityService:
    """商家月度订阅容量检查（只读）"""

    def __init__(self, vendors: VendorDirectory = None):
        self.vendors = vendors or VendorDirectory()

    def has_capacity(self, vendor_id: int, period: DateRange) -> bool:
        """商家在该周期内是否还能再接一个订阅"""
        load = self.vendors.count_active_subscriptions(vendor_id, period)
        return load < self.vendors.get_monthly_capacity(vendor_id)

    def available_slots(self, vendor_id: int, period: DateRange) -> int:
        load = self.vendors.count_active_subscriptions(vendor_id, period)
        return max(0, self.vendors.get_monthly_capacity(vendor_id) - load)

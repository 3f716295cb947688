"""
Business logic services.
Contains service layer implementations for core business operations.
"""

from datetime import date
from typing import Callable

from fastapi import Request

from ..core.database import DatabaseManager, db_manager
from ..core.events import AuditLogEventSink, EventPublisher, EventSink
from .capacity_service import CapacityService
from .directory_service import MenuDirectory, VendorDirectory
from .expiration_service import SweepReport, run_expiration_sweep
from .monthly_subscription_service import MonthlySubscriptionService, VendorMenuPair
from .payment_processor import PaymentProcessor, SimulatedPaymentProcessor
from .payment_service import PaymentService, summarize_payments
from .pricing_service import PricingService
from .subscription_service import SubscriptionService


class ServiceContainer:
    """按同一个数据库、网关、事件接收方和时钟组装所有服务"""

    def __init__(self, db: DatabaseManager = None,
                 processor: PaymentProcessor = None,
                 sink: EventSink = None,
                 today: Callable[[], date] = None):
        self.db = db or db_manager
        self.today = today or date.today
        self.events = EventPublisher(sink or AuditLogEventSink(self.db), self.db)

        self.menus = MenuDirectory(self.db)
        self.vendors = VendorDirectory(self.db)
        self.pricing = PricingService(self.menus)
        self.capacity = CapacityService(self.vendors)
        self.subscriptions = SubscriptionService(
            self.db, self.menus, self.pricing, self.capacity, self.events, self.today
        )
        self.bundles = MonthlySubscriptionService(
            self.db, self.subscriptions, self.events, self.today
        )
        self.payments = PaymentService(
            self.db, self.subscriptions, self.bundles,
            processor or SimulatedPaymentProcessor(), self.events,
        )

    def run_expiration_sweep(self, today: date = None) -> SweepReport:
        return run_expiration_sweep(self.subscriptions, self.bundles, today or self.today())


def get_services(request: Request) -> ServiceContainer:
    """FastAPI 依赖：返回应用的服务容器"""
    return request.app.state.services


__all__ = [
    "CapacityService",
    "MenuDirectory",
    "MonthlySubscriptionService",
    "PaymentProcessor",
    "PaymentService",
    "PricingService",
    "ServiceContainer",
    "SimulatedPaymentProcessor",
    "SubscriptionService",
    "SweepReport",
    "VendorDirectory",
    "VendorMenuPair",
    "get_services",
    "run_expiration_sweep",
    "summarize_payments",
]

"""
测试配置文件
提供测试所需的fixtures和配置
"""

import pytest
from datetime import date
from decimal import Decimal
from fastapi.testclient import TestClient

from ..app import create_app
from ..config.settings import settings
from ..core.database import DatabaseManager
from ..core.events import EventSink
from ..core.exceptions import PaymentProcessorError
from ..core.security import create_access_token
from ..models.subscription import DateRange
from ..services import ServiceContainer
from ..services.payment_processor import PaymentProcessor, ProcessorResult, RefundResult

TODAY = date(2024, 1, 15)
FEBRUARY = DateRange(start_date=date(2024, 2, 1), end_date=date(2024, 2, 29))


class FixedClock:
    """可手动调整的时钟"""

    def __init__(self, today: date = TODAY):
        self.current = today

    def __call__(self) -> date:
        return self.current


class FakeProcessor(PaymentProcessor):
    """
    测试用支付网关

    outcomes 中依次放入 True（成功）、False（拒绝）或异常实例；
    用完后默认成功。on_process 可以在扣款过程中模拟并发操作。
    """

    def __init__(self):
        self.outcomes = []
        self.charges = []
        self.refunds = []
        self.refund_outcomes = []
        self.on_process = None

    def process(self, amount, method, details):
        self.charges.append((amount, method, details))
        if self.on_process is not None:
            self.on_process()
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        if not outcome:
            return ProcessorResult(success=False, message="card declined")
        return ProcessorResult(success=True, transaction_ref=f"txn_test_{len(self.charges)}")

    def refund(self, transaction_ref, amount):
        self.refunds.append((transaction_ref, amount))
        outcome = self.refund_outcomes.pop(0) if self.refund_outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        if not outcome:
            return RefundResult(success=False, message="refund rejected")
        return RefundResult(success=True, refund_ref=f"ref_test_{len(self.refunds)}")


class RecordingSink(EventSink):
    """记录收到的事件，fail=True 时模拟投递失败"""

    def __init__(self):
        self.events = []
        self.fail = False

    def publish(self, event_type, payload):
        if self.fail:
            raise RuntimeError("sink unavailable")
        self.events.append((event_type, payload))

    def types(self):
        return [event_type.value for event_type, _ in self.events]


def add_vendor(db: DatabaseManager, name: str, capacity: int = 10) -> int:
    return db.execute_one(
        "INSERT INTO vendors(business_name, monthly_capacity) VALUES (?, ?) RETURNING id",
        [name, capacity],
    )["id"]


def add_menu(db: DatabaseManager, vendor_id: int, price: str = "25.00",
             meal_type: str = "lunch", status: str = "active") -> int:
    return db.execute_one(
        """
        INSERT INTO vendor_menus(vendor_id, meal_type, description, price, status)
        VALUES (?, ?, ?, ?, ?) RETURNING id
        """,
        [vendor_id, meal_type, f"{meal_type} menu", Decimal(price), status],
    )["id"]


def add_user(db: DatabaseManager, open_id: str, is_admin: bool = False) -> int:
    return db.execute_one(
        "INSERT INTO users(open_id, nickname, is_admin) VALUES (?, ?, ?) RETURNING id",
        [open_id, open_id, is_admin],
    )["id"]


@pytest.fixture
def test_db():
    """测试数据库（内存）"""
    db = DatabaseManager(":memory:")
    db.init_database()
    yield db
    db.close()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def services(test_db, processor, sink, clock):
    return ServiceContainer(test_db, processor=processor, sink=sink, today=clock)


@pytest.fixture
def catalog(test_db):
    """
    商家与菜单

    五个商家各有一个午餐菜单，价格分别为 25/30/20/15/10；
    商家 a 另有一个晚餐菜单和一个已下架的午餐菜单。
    """
    vendors = {name: add_vendor(test_db, f"vendor {name}") for name in "abcde"}
    prices = {"a": "25.00", "b": "30.00", "c": "20.00", "d": "15.00", "e": "10.00"}
    lunch = {name: add_menu(test_db, vendors[name], prices[name]) for name in "abcde"}
    return {
        "vendors": vendors,
        "lunch": lunch,
        "dinner_a": add_menu(test_db, vendors["a"], "40.00", meal_type="dinner"),
        "inactive_a": add_menu(test_db, vendors["a"], "5.00", status="inactive"),
    }


@pytest.fixture
def sample_user(test_db):
    return add_user(test_db, "user_001")


@pytest.fixture
def other_user(test_db):
    return add_user(test_db, "user_002")


@pytest.fixture
def app(services, monkeypatch):
    monkeypatch.setattr(settings, "sweep_enabled", False)
    return create_app(services)


@pytest.fixture
def client(app):
    """测试客户端"""
    return TestClient(app)


@pytest.fixture
def auth_headers(sample_user):
    """认证头"""
    return {"Authorization": f"Bearer {create_access_token('user_001')}"}


@pytest.fixture
def other_headers(other_user):
    return {"Authorization": f"Bearer {create_access_token('user_002')}"}


@pytest.fixture
def admin_headers(test_db):
    add_user(test_db, "admin_001", is_admin=True)
    return {"Authorization": f"Bearer {create_access_token('admin_001')}"}


@pytest.fixture
def processor_error():
    return PaymentProcessorError("gateway unreachable")

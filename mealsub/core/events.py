"""
业务事件通知
事件在事务提交之后才交给事件接收方，投递失败只记录日志，不影响业务结果
"""

from abc import ABC, abstractmethod
import json
import logging
from enum import Enum
from typing import Any, Dict

from .database import DatabaseManager, db_manager

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"


class EventSink(ABC):
    """事件接收方接口"""

    @abstractmethod
    def publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        ...


class AuditLogEventSink(EventSink):
    """把事件写入 logs 表，供通知服务轮询"""

    def __init__(self, db: DatabaseManager = None):
        self.db = db or db_manager

    def publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        self.db.execute_query(
            "INSERT INTO logs(user_id, actor_id, action, detail_json) VALUES (?,?,?,?)",
            [
                payload.get("user_id"),
                None,
                f"event:{event_type.value}",
                json.dumps(payload, ensure_ascii=False, default=str),
            ],
        )


class EventPublisher:
    """在事务提交后投递事件"""

    def __init__(self, sink: EventSink, db: DatabaseManager = None):
        self.sink = sink
        self.db = db or db_manager

    def emit(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        self.db.after_commit(lambda: self._deliver(event_type, payload))

    def _deliver(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        try:
            self.sink.publish(event_type, payload)
        except Exception:
            logger.warning("Failed to deliver event %s: %s", event_type.value, payload, exc_info=True)

"""
支付网关接口
核心业务只依赖 process/refund 两个能力；真实网关对接不在本项目范围内
"""

from abc import ABC, abstractmethod
import itertools
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from ..models.payment import PaymentMethod

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessorResult:
    success: bool
    transaction_ref: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_ref: Optional[str] = None
    message: Optional[str] = None


class PaymentProcessor(ABC):
    """
    支付网关能力

    process 返回成功/失败和交易号；网关不可达时抛出 PaymentProcessorError。
    """

    @abstractmethod
    def process(self, amount: Decimal, method: PaymentMethod,
                details: Dict[str, Any]) -> ProcessorResult:
        ...

    @abstractmethod
    def refund(self, transaction_ref: str, amount: Decimal) -> RefundResult:
        ...


class SimulatedPaymentProcessor(PaymentProcessor):
    """模拟网关：总是成功，返回带时间戳的交易号"""

    def __init__(self):
        self._counter = itertools.count(1)

    def process(self, amount: Decimal, method: PaymentMethod,
                details: Dict[str, Any]) -> ProcessorResult:
        ref = f"txn_{int(time.time() * 1000)}_{next(self._counter)}"
        logger.info("Simulated charge of %s via %s -> %s", amount, method.value, ref)
        return ProcessorResult(success=True, transaction_ref=ref)

    def refund(self, transaction_ref: str, amount: Decimal) -> RefundResult:
        ref = f"ref_{int(time.time() * 1000)}_{next(self._counter)}"
        logger.info("Simulated refund of %s for %s -> %s", amount, transaction_ref, ref)
        return RefundResult(success=True, refund_ref=ref)

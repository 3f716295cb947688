"""
过期扫描
把结束日期早于今天、仍在生效中的订阅和月度订阅转为已过期

只选择生效中的记录，重复执行不会重复转换；
单条记录失败只记录日志并计入报告，不影响其余记录。
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import List

from ..core.exceptions import BusinessRuleError
from .monthly_subscription_service import MonthlySubscriptionService
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


@dataclass
class SweepFailure:
    subscription_id: int
    subscription_type: str
    error: str


@dataclass
class SweepReport:
    run_date: date
    expired_subscription_ids: List[int] = field(default_factory=list)
    expired_bundle_ids: List[int] = field(default_factory=list)
    failures: List[SweepFailure] = field(default_factory=list)

    @property
    def expired_count(self) -> int:
        return len(self.expired_subscription_ids) + len(self.expired_bundle_ids)

    def to_dict(self) -> dict:
        return {
            "run_date": self.run_date.isoformat(),
            "expired_subscription_ids": self.expired_subscription_ids,
            "expired_bundle_ids": self.expired_bundle_ids,
            "expired_count": self.expired_count,
            "failures": [
                {
                    "subscription_id": f.subscription_id,
                    "subscription_type": f.subscription_type,
                    "error": f.error,
                }
                for f in self.failures
            ],
        }


def run_expiration_sweep(subscriptions: SubscriptionService,
                         bundles: MonthlySubscriptionService,
                         today: date) -> SweepReport:
    """执行一次过期扫描"""
    report = SweepReport(run_date=today)

    for subscription_id in subscriptions.find_expirable_ids(today):
        try:
            subscriptions.expire(subscription_id)
            report.expired_subscription_ids.append(subscription_id)
        except BusinessRuleError as e:
            # 与用户取消并发时，另一方先完成
            logger.info("Skip expiring subscription %s: %s", subscription_id, e.message)
            report.failures.append(SweepFailure(subscription_id, "single", e.message))
        except Exception as e:
            logger.error("Failed to expire subscription %s", subscription_id, exc_info=True)
            report.failures.append(SweepFailure(subscription_id, "single", str(e)))

    for bundle_id in bundles.find_expirable_ids(today):
        try:
            bundles.expire_bundle(bundle_id)
            report.expired_bundle_ids.append(bundle_id)
        except BusinessRuleError as e:
            logger.info("Skip expiring monthly subscription %s: %s", bundle_id, e.message)
            report.failures.append(SweepFailure(bundle_id, "monthly", e.message))
        except Exception as e:
            logger.error("Failed to expire monthly subscription %s", bundle_id, exc_info=True)
            report.failures.append(SweepFailure(bundle_id, "monthly", str(e)))

    logger.info(
        "Expiration sweep for %s: %d expired, %d failed",
        today, report.expired_count, len(report.failures),
    )
    return report

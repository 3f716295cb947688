# -*- coding: utf-8 -*-
"""
过期扫描脚本
用于通过 cron 每日执行一次过期扫描，不需要启动 API 服务

用法：
    python scripts/run_sweep.py              # 以今天为基准
    python scripts/run_sweep.py 2024-02-01   # 指定基准日期
"""

import json
import logging
import sys
from datetime import date

from mealsub.app import configure_logging
from mealsub.services import ServiceContainer


def main():
    """主函数"""
    configure_logging()
    run_date = date.fromisoformat(sys.argv[1]) if len(sys.argv) > 1 else date.today()

    services = ServiceContainer()
    services.db.init_database()
    try:
        report = services.run_expiration_sweep(run_date)
    finally:
        services.db.close()

    print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))
    if report.failures:
        logging.getLogger("run_sweep").warning("%d records failed to expire", len(report.failures))
        sys.exit(1)


if __name__ == "__main__":
    main()

"""
数据库连接和管理模块
提供 DuckDB 的连接、表结构初始化和事务管理

数据库表说明：
- users: 用户身份
- vendors: 商家及其月度订阅容量
- vendor_menus: 商家菜单与价格
- meal_subscriptions: 单商家订阅
- monthly_subscriptions: 月度（多商家）订阅
- payments: 支付流水（只追加，退款为负金额）
- logs: 操作审计日志
"""

import duckdb
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional
from contextlib import contextmanager
from fastapi import Request

from .exceptions import BaseApplicationError, ConcurrencyError, DatabaseError
from ..config.settings import settings

# 完整的表结构定义
SCHEMA_SQL = r"""
CREATE SEQUENCE IF NOT EXISTS users_id_seq;
CREATE TABLE IF NOT EXISTS users (
  id INTEGER DEFAULT nextval('users_id_seq') PRIMARY KEY,
  open_id TEXT UNIQUE NOT NULL,
  nickname TEXT,
  is_admin BOOLEAN DEFAULT FALSE,
  created_at TIMESTAMP DEFAULT now()
);

CREATE SEQUENCE IF NOT EXISTS vendors_id_seq;
CREATE TABLE IF NOT EXISTS vendors (
  id INTEGER DEFAULT nextval('vendors_id_seq') PRIMARY KEY,
  business_name TEXT NOT NULL,
  monthly_capacity INTEGER DEFAULT 50,
  created_at TIMESTAMP DEFAULT now()
);

CREATE SEQUENCE IF NOT EXISTS vendor_menus_id_seq;
CREATE TABLE IF NOT EXISTS vendor_menus (
  id INTEGER DEFAULT nextval('vendor_menus_id_seq') PRIMARY KEY,
  vendor_id INTEGER NOT NULL,
  meal_type TEXT CHECK(meal_type IN ('breakfast','lunch','dinner')) NOT NULL,
  description TEXT,
  price DECIMAL(10,2) NOT NULL,
  status TEXT CHECK(status IN ('active','inactive')) DEFAULT 'active',
  created_at TIMESTAMP DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_vendor_menus_vendor ON vendor_menus(vendor_id);

CREATE SEQUENCE IF NOT EXISTS meal_subscriptions_id_seq;
CREATE TABLE IF NOT EXISTS meal_subscriptions (
  id INTEGER DEFAULT nextval('meal_subscriptions_id_seq') PRIMARY KEY,
  user_id INTEGER NOT NULL,
  vendor_id INTEGER NOT NULL,
  menu_id INTEGER NOT NULL,
  meal_type TEXT CHECK(meal_type IN ('breakfast','lunch','dinner')) NOT NULL,
  price DECIMAL(10,2) NOT NULL,  -- 创建时锁定，之后不再修改
  status TEXT CHECK(status IN ('pending','active','paused','cancelled','completed','expired','failed')) NOT NULL,
  start_date DATE NOT NULL,
  end_date DATE NOT NULL,
  monthly_subscription_id INTEGER,  -- 仅用于查找，不做级联删除
  created_at TIMESTAMP DEFAULT now(),
  updated_at TIMESTAMP DEFAULT now(),
  CHECK (start_date < end_date)
);

CREATE INDEX IF NOT EXISTS idx_meal_subscriptions_user ON meal_subscriptions(user_id);
CREATE INDEX IF NOT EXISTS idx_meal_subscriptions_vendor ON meal_subscriptions(vendor_id);

CREATE SEQUENCE IF NOT EXISTS monthly_subscriptions_id_seq;
CREATE TABLE IF NOT EXISTS monthly_subscriptions (
  id INTEGER DEFAULT nextval('monthly_subscriptions_id_seq') PRIMARY KEY,
  user_id INTEGER NOT NULL,
  vendor_ids JSON NOT NULL,
  member_subscription_ids JSON NOT NULL,
  meal_type TEXT CHECK(meal_type IN ('breakfast','lunch','dinner')) NOT NULL,
  total_price DECIMAL(10,2) NOT NULL,
  status TEXT CHECK(status IN ('pending','active','paused','cancelled','completed','expired','failed')) NOT NULL,
  start_date DATE NOT NULL,
  end_date DATE NOT NULL,
  address_id TEXT NOT NULL,
  payment_id INTEGER,
  created_at TIMESTAMP DEFAULT now(),
  updated_at TIMESTAMP DEFAULT now(),
  CHECK (start_date < end_date),
  CHECK (json_array_length(vendor_ids) >= 1 AND json_array_length(vendor_ids) <= 4)
);

CREATE INDEX IF NOT EXISTS idx_monthly_subscriptions_user ON monthly_subscriptions(user_id);

CREATE SEQUENCE IF NOT EXISTS payments_id_seq;
CREATE TABLE IF NOT EXISTS payments (
  id INTEGER DEFAULT nextval('payments_id_seq') PRIMARY KEY,
  user_id INTEGER NOT NULL,
  subscription_id INTEGER NOT NULL,
  subscription_type TEXT CHECK(subscription_type IN ('single','monthly')) NOT NULL,
  amount DECIMAL(10,2) NOT NULL,  -- 负数表示退款
  status TEXT CHECK(status IN ('pending','completed','failed')) NOT NULL,
  payment_method TEXT CHECK(payment_method IN ('credit_card','debit_card','upi','bank_transfer','wallet')) NOT NULL,
  payment_details JSON,
  created_at TIMESTAMP DEFAULT now(),
  paid_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_payments_subscription ON payments(subscription_type, subscription_id);

CREATE SEQUENCE IF NOT EXISTS logs_id_seq;
CREATE TABLE IF NOT EXISTS logs (
  log_id INTEGER DEFAULT nextval('logs_id_seq') PRIMARY KEY,
  user_id INTEGER,
  actor_id INTEGER,
  action TEXT,
  detail_json JSON,
  created_at TIMESTAMP DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_logs_user ON logs(user_id);
CREATE INDEX IF NOT EXISTS idx_logs_action ON logs(action);
"""


def rows_to_dicts(cursor) -> List[Dict[str, Any]]:
    """把查询结果转换为以列名为键的字典列表"""
    columns = [col[0] for col in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def row_to_dict(cursor) -> Optional[Dict[str, Any]]:
    """取单行结果并转换为字典"""
    row = cursor.fetchone()
    if row is None:
        return None
    columns = [col[0] for col in cursor.description]
    return dict(zip(columns, row))


class DatabaseManager:
    """数据库管理器，封装所有数据库操作"""

    def __init__(self, db_path: Optional[str] = None):
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self._after_commit: List[Callable[[], None]] = []
        self.db_path = db_path or self._get_db_path_from_settings()

    def _get_db_path_from_settings(self) -> str:
        """从设置中获取数据库路径"""
        db_url = settings.database_url
        if db_url.startswith("duckdb://"):
            db_url = db_url.replace("duckdb://", "", 1)
        return db_url

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        """获取数据库连接"""
        if self._connection is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = duckdb.connect(self.db_path)
            self._init_schema()
        return self._connection

    def _init_schema(self):
        """初始化数据库表结构"""
        try:
            self._connection.execute(SCHEMA_SQL)
        except duckdb.Error as e:
            raise DatabaseError(f"Failed to initialize schema: {e}")

    def init_database(self):
        """初始化数据库"""
        with self._lock:
            self.connection.execute(SCHEMA_SQL)

    def close(self):
        """关闭连接"""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    @contextmanager
    def transaction(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        数据库事务上下文管理器

        嵌套调用会加入外层事务，由最外层负责提交或回滚。
        锁只在一个事务单元内持有，不跨越外部调用（例如支付网关）。
        """
        callbacks: List[Callable[[], None]] = []
        with self._lock:
            conn = self.connection
            if self._depth > 0:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            self._after_commit = []
            conn.execute("BEGIN")
            try:
                yield conn
                conn.execute("COMMIT")
                callbacks = self._after_commit
            except BaseApplicationError:
                conn.execute("ROLLBACK")
                raise
            except duckdb.Error as e:
                conn.execute("ROLLBACK")
                if "conflict" in str(e).lower() or "serialization" in str(e).lower():
                    raise ConcurrencyError("系统繁忙，请稍后重试") from e
                raise DatabaseError(f"数据库操作失败: {str(e)}") from e
            except Exception:
                conn.execute("ROLLBACK")
                raise
            finally:
                self._depth = 0
                self._after_commit = []

        # 提交成功后再执行回调（例如事件通知），回滚时丢弃
        for callback in callbacks:
            callback()

    def after_commit(self, callback: Callable[[], None]):
        """注册事务提交后执行的回调；不在事务中时立即执行"""
        with self._lock:
            if self._depth > 0:
                self._after_commit.append(callback)
                return
        callback()

    def execute_query(self, query: str, params: list = None) -> List[Dict[str, Any]]:
        """执行查询并返回字典列表"""
        try:
            with self._lock:
                cursor = self.connection.execute(query, params or [])
                return rows_to_dicts(cursor)
        except duckdb.Error as e:
            raise DatabaseError(f"Query execution failed: {e}") from e

    def execute_one(self, query: str, params: list = None) -> Optional[Dict[str, Any]]:
        """执行查询并返回单条结果"""
        try:
            with self._lock:
                cursor = self.connection.execute(query, params or [])
                return row_to_dict(cursor)
        except duckdb.Error as e:
            raise DatabaseError(f"Query execution failed: {e}") from e


# 全局数据库管理器实例
db_manager = DatabaseManager()


def get_db(request: Request) -> DatabaseManager:
    """FastAPI 依赖：返回应用使用的数据库管理器"""
    return getattr(request.app.state, "db", db_manager)


"""
安全相关功能
JWT 解析和当前用户识别；令牌签发只用于测试和运维工具
"""

import jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .exceptions import AuthenticationError
from .database import DatabaseManager, get_db
from ..config.settings import settings


class SecurityManager:
    """安全管理器"""

    def __init__(self, secret_key: str = None, algorithm: str = None,
                 expire_hours: int = None):
        self.secret_key = secret_key or settings.jwt_secret_key
        self.algorithm = algorithm or settings.jwt_algorithm
        self.expire_hours = expire_hours or settings.jwt_expire_hours

    def create_jwt_token(self, open_id: str, additional_claims: Dict[str, Any] = None) -> str:
        """创建JWT token"""
        now = datetime.now(timezone.utc)
        payload = {
            "open_id": open_id,
            "exp": now + timedelta(hours=self.expire_hours),
            "iat": now,
        }
        if additional_claims:
            payload.update(additional_claims)
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def decode_jwt_token(self, token: str) -> Dict[str, Any]:
        """解码JWT token"""
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"Invalid token: {e}")

    def get_open_id_from_token(self, token: str) -> str:
        """从token中提取open_id"""
        payload = self.decode_jwt_token(token)
        open_id = payload.get("open_id")
        if not open_id:
            raise AuthenticationError("Token missing open_id")
        return open_id


# 全局安全管理器实例
security_manager = SecurityManager()

bearer_scheme = HTTPBearer(auto_error=False)


async def get_open_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> str:
    """从Authorization header中提取并验证open_id"""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    try:
        return security_manager.get_open_id_from_token(credentials.credentials)
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=e.message)


def create_access_token(open_id: str) -> str:
    """创建访问token"""
    return security_manager.create_jwt_token(open_id)


def get_current_user_id(open_id: str = Depends(get_open_id),
                        db: DatabaseManager = Depends(get_db)) -> int:
    """获取当前用户ID，首次访问时自动创建用户"""
    with db.transaction() as conn:
        user_row = conn.execute(
            "SELECT id FROM users WHERE open_id = ?", [open_id]
        ).fetchone()
        if user_row:
            return user_row[0]
        return conn.execute(
            "INSERT INTO users (open_id) VALUES (?) RETURNING id", [open_id]
        ).fetchone()[0]


def check_admin_permission(current_user_id: int = Depends(get_current_user_id),
                           db: DatabaseManager = Depends(get_db)) -> int:
    """检查管理员权限，返回管理员用户ID"""
    user_row = db.execute_one("SELECT is_admin FROM users WHERE id = ?", [current_user_id])
    if not user_row or not user_row["is_admin"]:
        raise HTTPException(status_code=403, detail="需要管理员权限")
    return current_user_id

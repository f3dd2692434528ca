"""
认证与令牌管理

支持：
- 管理员密码校验（SHA-256 + salt，避免额外依赖）
- 不透明 Bearer Token 的签发、校验、过期与注销
- 首次启动未配置密码时生成随机密码

令牌是不透明字符串，流式连接通过 URL 查询参数携带（握手阶段无法自定义请求头）。
"""

import hashlib
import secrets
import time
from typing import Optional

from core.logger import get_logger

_logger = get_logger("services.auth")

ROLE_ADMIN = "admin"


class AuthService:
    """令牌会话管理服务"""

    def __init__(self, config=None, token_ttl: Optional[float] = None):
        self._config = config
        self._token_ttl = token_ttl or (config.get("security.token_ttl", 86400) if config else 86400)

        # 活跃 Token 表：{token: {user, role, created_at, expires_at}}
        self._sessions: dict[str, dict] = {}

        self._admin_user = config.get("security.admin_user", "admin") if config else "admin"
        self._admin_password_hash = ""
        self._initial_password = ""
        self._ensure_admin_password()

    def _ensure_admin_password(self):
        configured = self._config.get("security.admin_password", "") if self._config else ""
        if configured:
            self._admin_password_hash = self._hash_password(configured)
            return

        self._initial_password = secrets.token_urlsafe(12)
        self._admin_password_hash = self._hash_password(self._initial_password)
        _logger.warning("=" * 50)
        _logger.warning("  未配置管理员密码，已生成临时密码")
        _logger.warning(f"  用户名: {self._admin_user}")
        _logger.warning(f"  密码:   {self._initial_password}")
        _logger.warning("=" * 50)

    def _hash_password(self, password: str) -> str:
        salt = secrets.token_hex(16)
        hashed = hashlib.sha256(f"{salt}:{password}".encode()).hexdigest()
        return f"{salt}:{hashed}"

    def _verify_password(self, password: str, stored_hash: str) -> bool:
        try:
            salt, hashed = stored_hash.split(":", 1)
        except ValueError:
            return False
        candidate = hashlib.sha256(f"{salt}:{password}".encode()).hexdigest()
        return secrets.compare_digest(candidate, hashed)

    def login(self, username: str, password: str) -> Optional[dict]:
        """
        管理员登录。

        Returns:
            成功返回 {"token", "expires_at"}，失败返回 None
        """
        if username != self._admin_user or not self._verify_password(password, self._admin_password_hash):
            _logger.warning(f"登录失败: {username}")
            return None

        token = self.issue_token(username, role=ROLE_ADMIN)
        _logger.info(f"登录成功: {username}")
        return {"token": token, "expires_at": self._sessions[token]["expires_at"]}

    def issue_token(self, user: str, role: str = ROLE_ADMIN, ttl: Optional[float] = None) -> str:
        """签发一个新令牌"""
        token = secrets.token_urlsafe(32)
        now = time.time()
        self._sessions[token] = {
            "user": user,
            "role": role,
            "created_at": now,
            "expires_at": now + (ttl if ttl is not None else self._token_ttl),
        }
        return token

    def revoke(self, token: str) -> bool:
        session = self._sessions.pop(token, None)
        if session:
            _logger.info(f"令牌已注销: {session['user']}")
        return session is not None

    def validate_token(self, token: str) -> Optional[dict]:
        """
        校验令牌。

        Returns:
            有效返回会话信息的副本，无效或过期返回 None
        """
        if not token:
            return None
        session = self._sessions.get(token)
        if not session:
            return None
        if time.time() >= session["expires_at"]:
            del self._sessions[token]
            return None
        return dict(session)

    def is_setup_required(self) -> bool:
        return bool(self._initial_password)

    def cleanup_expired(self) -> int:
        now = time.time()
        expired = [t for t, s in self._sessions.items() if now >= s["expires_at"]]
        for token in expired:
            del self._sessions[token]
        return len(expired)

"""
操作目录

(kind, action) → 具体执行步骤。每个操作是一个协程，
通过 OperationContext 写日志、执行命令；任何失败都抛 OperationError，
由 TaskRunner 统一转换为任务日志 + failed 终态。

命令一律以 argv 列表执行，目标名 / 版本号在进入目录前按白名单校验。
"""

import os
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional

from core.errors import InvalidRequest, OperationError

_PHP_VERSION_RE = re.compile(r"^\d+\.\d+$")
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.+_-]{0,127}$")

# 所有经由 apt/dpkg 的操作共用的互斥键
APT_LOCK = "apt"

_ACTION_NAMES = {
    "install": "安装",
    "uninstall": "卸载",
    "enable": "启用",
    "disable": "停用",
    "update": "更新",
}

PHP_MODULES = ("fpm", "cli", "common", "mysql", "gd", "curl", "mbstring", "xml", "zip")


class OperationContext:
    """
    操作执行期上下文（由 TaskRunner 为每个任务创建）

    Attributes:
        log: 追加一行任务日志
        run: 执行命令并把输出逐行写入任务日志
        probe: 静默执行探测命令
        spawn_detached: 脱离本进程启动后台进程
        config: ConfigManager
    """

    def __init__(
        self,
        log: Callable[[str], None],
        run: Callable[..., Awaitable[int]],
        probe: Callable[..., Awaitable[tuple[int, str]]],
        spawn_detached: Callable[..., Awaitable[int]],
        config=None,
    ):
        self.log = log
        self.run = run
        self.probe = probe
        self.spawn_detached = spawn_detached
        self.config = config


Handler = Callable[[OperationContext, str, dict[str, Any]], Awaitable[None]]


@dataclass
class Operation:
    kind: str
    action: str
    handler: Handler
    # 目标 / 选项校验，非法时抛 InvalidRequest
    validate: Optional[Callable[[str, dict[str, Any]], None]] = None
    # 互斥键：相同键的任务不能同时运行
    lock_key: Optional[Callable[[str, dict[str, Any]], str]] = None
    label: Optional[Callable[[str, dict[str, Any]], str]] = None

    def check(self, target: str, options: dict[str, Any]):
        if self.validate:
            self.validate(target, options)

    def key(self, target: str, options: dict[str, Any]) -> str:
        if self.lock_key:
            return self.lock_key(target, options)
        return f"{self.kind}:{target}"

    def describe(self, target: str, options: dict[str, Any]) -> str:
        subject = self.label(target, options) if self.label else target
        return f"{subject} {_ACTION_NAMES.get(self.action, self.action)}"


class OperationCatalog:
    """可执行操作的注册表"""

    def __init__(self):
        self._ops: dict[tuple[str, str], Operation] = {}

    def register(self, operation: Operation) -> Operation:
        self._ops[(operation.kind, operation.action)] = operation
        return operation

    def resolve(self, kind: str, action: str) -> Operation:
        op = self._ops.get((kind, action))
        if op is None:
            raise InvalidRequest(f"不支持的操作: {kind}/{action}")
        return op

    def kinds(self) -> list[tuple[str, str]]:
        return sorted(self._ops)


# ──────────────────────────────────────────────
# 校验
# ──────────────────────────────────────────────

def _require_name(target: str, _options: dict[str, Any]):
    if not _NAME_RE.match(target):
        raise InvalidRequest(f"目标名称非法: {target!r}")


def _require_php_version(target: str, _options: dict[str, Any]):
    if not _PHP_VERSION_RE.match(target):
        raise InvalidRequest(f"PHP 版本号非法: {target!r}")


def _require_extension(target: str, options: dict[str, Any]):
    _require_name(target, options)
    php_version = str(options.get("php_version", ""))
    if not _PHP_VERSION_RE.match(php_version):
        raise InvalidRequest(f"扩展操作需要合法的 php_version: {php_version!r}")


# ──────────────────────────────────────────────
# 操作实现
# ──────────────────────────────────────────────

async def _apt_install(ctx: OperationContext, packages: list[str]):
    await ctx.run(["apt-get", "update"])
    await ctx.run(["apt-get", "install", "-y", *packages])


async def install_php(ctx: OperationContext, version: str, options: dict[str, Any]):
    ctx.log("📋 检查 ondrej/php PPA...")
    code, _ = await ctx.probe(["grep", "-rlq", "ondrej/php", "/etc/apt/sources.list.d/"])
    if code != 0:
        ctx.log("➕ 添加 ondrej/php PPA...")
        ok = await ctx.run(["apt-get", "install", "-y", "software-properties-common"], check=False) == 0
        ok = ok and await ctx.run(["add-apt-repository", "-y", "ppa:ondrej/php"], check=False) == 0
        if not ok:
            ctx.log("⚠️ PPA 添加失败，继续执行...")
    else:
        ctx.log("✓ ondrej/php PPA 已存在")

    packages = [f"php{version}-{module}" for module in PHP_MODULES]
    ctx.log(f"📦 软件包: {' '.join(packages)}")
    await _apt_install(ctx, packages)

    ctx.log("🔧 启用 PHP-FPM 服务...")
    await ctx.run(["systemctl", "enable", "--now", f"php{version}-fpm"], check=False)


async def uninstall_php(ctx: OperationContext, version: str, options: dict[str, Any]):
    ctx.log("🛑 停止 PHP-FPM 服务...")
    await ctx.run(["systemctl", "disable", "--now", f"php{version}-fpm"], check=False)
    ctx.log(f"🗑️ 卸载 PHP {version} 软件包...")
    await ctx.run(["apt-get", "remove", "-y", f"php{version}-*"])


async def install_extension(ctx: OperationContext, extension: str, options: dict[str, Any]):
    php_version = options["php_version"]
    package = f"php{php_version}-{extension}"
    ctx.log(f"📦 软件包: {package}")
    await _apt_install(ctx, [package])
    ctx.log("🔄 重启 PHP-FPM...")
    await ctx.run(["systemctl", "restart", f"php{php_version}-fpm"], check=False)


async def uninstall_extension(ctx: OperationContext, extension: str, options: dict[str, Any]):
    php_version = options["php_version"]
    package = f"php{php_version}-{extension}"
    ctx.log(f"🗑️ 卸载软件包: {package}")
    await ctx.run(["apt-get", "remove", "-y", package])
    ctx.log("🔄 重启 PHP-FPM...")
    await ctx.run(["systemctl", "restart", f"php{php_version}-fpm"], check=False)


async def enable_apache_module(ctx: OperationContext, module: str, options: dict[str, Any]):
    ctx.log(f"🔧 启用 Apache 模块: {module}")
    await ctx.run(["a2enmod", module])
    ctx.log("🔄 重新加载 Apache...")
    await ctx.run(["systemctl", "reload", "apache2"], check=False)


async def disable_apache_module(ctx: OperationContext, module: str, options: dict[str, Any]):
    ctx.log(f"🔧 停用 Apache 模块: {module}")
    await ctx.run(["a2dismod", module])
    ctx.log("🔄 重新加载 Apache...")
    await ctx.run(["systemctl", "reload", "apache2"], check=False)


async def install_software(ctx: OperationContext, package: str, options: dict[str, Any]):
    ctx.log(f"📦 软件包: {package}")
    await _apt_install(ctx, [package])


async def uninstall_software(ctx: OperationContext, package: str, options: dict[str, Any]):
    ctx.log(f"🗑️ 卸载软件包: {package}")
    await ctx.run(["apt-get", "remove", "-y", package])


async def update_panel(ctx: OperationContext, target: str, options: dict[str, Any]):
    """
    启动自更新脚本。

    脚本会重启本服务进程，因此在独立会话中脱离启动；
    任务在脚本成功拉起后即视为完成，客户端随后改为轮询存活探针。
    """
    script = ctx.config.get("update.script") if ctx.config else ""
    log_file = ctx.config.get("update.log_file", "/tmp/panel-update.log") if ctx.config else "/tmp/panel-update.log"

    if not script or not os.path.isfile(script):
        raise OperationError(f"更新脚本不存在: {script}")

    ctx.log("更新开始...")
    try:
        pid = await ctx.spawn_detached(["bash", script], log_file, cwd=os.path.dirname(script))
    except OSError as e:
        raise OperationError(f"更新脚本启动失败: {e}") from e

    ctx.log(f"更新脚本已启动 (pid={pid})，服务即将重启...")
    ctx.log(f"日志文件: {log_file}")


def default_catalog() -> OperationCatalog:
    """内置操作目录"""
    catalog = OperationCatalog()

    # apt/dpkg 同一时刻只能有一个使用者
    apt_key = lambda _target, _opts: APT_LOCK  # noqa: E731
    php_label = lambda target, _opts: f"PHP {target}"  # noqa: E731
    ext_label = lambda target, opts: f"PHP {opts.get('php_version')} {target} 扩展"  # noqa: E731

    for action, handler in (("install", install_php), ("uninstall", uninstall_php)):
        catalog.register(Operation("php", action, handler, _require_php_version, apt_key, php_label))
    for action, handler in (("install", install_extension), ("uninstall", uninstall_extension)):
        catalog.register(Operation("extension", action, handler, _require_extension, apt_key, ext_label))
    for action, handler in (("enable", enable_apache_module), ("disable", disable_apache_module)):
        catalog.register(Operation("apache", action, handler, _require_name))
    for action, handler in (("install", install_software), ("uninstall", uninstall_software)):
        catalog.register(Operation("software", action, handler, _require_name, apt_key))

    catalog.register(Operation(
        "system", "update", update_panel, _require_name,
        lock_key=lambda _target, _opts: "system:update",
        label=lambda _target, _opts: "面板",
    ))
    return catalog

"""
API v1 路由汇总
"""

from fastapi import APIRouter

from api.v1.auth import router as auth_router
from api.v1.stream import router as stream_router
from api.v1.system import router as system_router
from api.v1.tasks import router as tasks_router

router = APIRouter(prefix="/api/v1")

# 注册子路由
router.include_router(system_router)
router.include_router(auth_router)
router.include_router(tasks_router)
router.include_router(stream_router)

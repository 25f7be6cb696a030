# Read-only query routes over the held windows

from fastapi import APIRouter

from .windows import router as windows_router

router = APIRouter()
router.include_router(windows_router, prefix='/v1/windows', tags=['windows'])

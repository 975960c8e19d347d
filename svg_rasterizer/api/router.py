from fastapi import APIRouter

from svg_rasterizer.api.health.routes import router as health_router
from svg_rasterizer.api.rasterize.routes import router as rasterize_router

router = APIRouter()
router.include_router(rasterize_router)
router.include_router(health_router)

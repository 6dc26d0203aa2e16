from fastapi import APIRouter

from api.routers.geoloader import router as geoloader_router
from api.routers.system import router as system_router

router = APIRouter()
router.include_router(geoloader_router)
router.include_router(system_router)

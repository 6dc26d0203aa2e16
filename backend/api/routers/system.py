from fastapi import APIRouter, Depends

from api.helpers import get_pipeline
from models.response_models import HealthCheckResponse
from services.geoloader import GeoLoaderPipeline

router = APIRouter()


# --- ヘルスチェック ---
@router.get(
    "/api/health",
    summary="Health Check",
    tags=["System"],
    status_code=200,
    response_model=HealthCheckResponse,
    responses={
        200: {
            "description": "System health status and available formats",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "registry_verified": True,
                        "supported_formats": ["shapefile", "dxf", "delimited", "geojson"],
                        "coordinate_systems": ["EPSG:2056", "EPSG:21781", "EPSG:4326", "EPSG:3857"]
                    }
                }
            }
        }
    }
)
async def api_health_check(pipeline: GeoLoaderPipeline = Depends(get_pipeline)):
    """
    システムのヘルスチェックと利用可能な形式を返します。

    System health check and supported formats.

    **ステータス / Status**:
    - `healthy`: 座標系の検証に成功 / Registry reference points reproject correctly
    - `degraded`: 座標系の検証に失敗（PROJ データの不整合） / Reprojection is off (PROJ data problem)

    **用途 / Use Cases**:
    - サーバーの起動確認 / Server startup verification
    - モニタリング・ヘルスチェック / Monitoring health checks
    """
    verified = pipeline.registry.verify()
    return HealthCheckResponse(
        status="healthy" if verified else "degraded",
        registry_verified=verified,
        supported_formats=[parser.name for parser in pipeline.parsers],
        coordinate_systems=pipeline.registry.codes(),
    )

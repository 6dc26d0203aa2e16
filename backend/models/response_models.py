from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


class HealthCheckResponse(BaseModel):
    """Health check response (ヘルスチェックレスポンス)"""

    status: str = Field(
        description="ステータス / Status (healthy/degraded)",
        example="healthy"
    )
    registry_verified: bool = Field(
        description="座標系レジストリの検証結果 / Registry reference points reproject correctly",
        example=True
    )
    supported_formats: List[str] = Field(
        description="サポートされるファイル形式 / Supported file formats",
        example=["shapefile", "dxf", "delimited", "geojson"]
    )
    coordinate_systems: List[str] = Field(
        description="登録済み座標系 / Registered coordinate systems",
        example=["EPSG:2056", "EPSG:21781", "EPSG:4326", "EPSG:3857"]
    )


class CoordinateSystemInfo(BaseModel):
    """Registered coordinate system (座標系情報)"""

    code: str = Field(description="座標系コード / System code", example="EPSG:2056")
    name: str = Field(description="名称 / Name", example="CH1903+ / LV95")
    proj4: str = Field(description="PROJ定義 / PROJ definition", example="+proj=somerc ...")
    units: str = Field(description="単位 / Units (m or degrees)", example="m")
    is_geographic: bool = Field(description="地理座標系か / Geographic (lon/lat) system", example=False)
    envelope: List[float] = Field(
        description="有効範囲 / Valid envelope (minX, minY, maxX, maxY)",
        example=[2485000.0, 1075000.0, 2835000.0, 1295000.0]
    )


class CoordinateSystemListResponse(BaseModel):
    """Coordinate system listing (座標系一覧)"""

    coordinate_systems: List[CoordinateSystemInfo] = Field(
        description="登録済み座標系 / Registered coordinate systems"
    )
    default_target: str = Field(
        description="既定の出力座標系 / Default target system",
        example="EPSG:4326"
    )


class CacheStatsResponse(BaseModel):
    """Cache statistics (キャッシュ統計)"""

    transformation: Dict[str, Any] = Field(
        description="座標変換キャッシュ / Transformer cache statistics",
        example={"size": 1, "hits": 12, "misses": 1, "oldestEntry": 10.5, "newestEntry": 10.5}
    )
    preview: Dict[str, Any] = Field(
        description="プレビューキャッシュ / Preview cache statistics",
        example={"size": 2, "maxEntries": 100, "hits": 3, "misses": 2, "hitRate": 0.6, "ttlSeconds": 86400}
    )


class CacheClearResponse(BaseModel):
    """Cache clear response (キャッシュ削除レスポンス)"""

    cleared: bool = Field(description="削除済み / Caches cleared", example=True)
    message: str = Field(description="メッセージ / Message", example="Transformation and preview caches cleared")


class AnalyzeResponse(BaseModel):
    """File analysis response (ファイル解析レスポンス)"""

    success: bool = Field(description="成功フラグ / Success flag", example=True)
    file_name: str = Field(description="解析したメインファイル / Analyzed main file", example="parcels.shp")
    analysis: Dict[str, Any] = Field(
        description="解析結果（レイヤー、範囲、座標系、サンプル、警告） / Layers, bounds, CRS, sample, warnings"
    )


class PreviewResponse(BaseModel):
    """Preview response (プレビューレスポンス)"""

    success: bool = Field(description="成功フラグ / Success flag", example=True)
    file_name: str = Field(description="読み込んだメインファイル / Loaded main file", example="parcels.shp")
    coordinate_system: str = Field(description="出力座標系 / Output coordinate system", example="EPSG:4326")
    from_cache: bool = Field(description="キャッシュから返却 / Served from the preview cache", example=False)
    preview: Dict[str, Any] = Field(
        description="points / lines / polygons の FeatureCollection と件数・範囲 / Categorized collections with counts and bounds"
    )
    detection: Dict[str, Any] = Field(
        description="座標系検出結果 / Source coordinate system detection",
        example={"system": "EPSG:2056", "confidence": 0.9, "source": "metadata", "details": "Detected from PRJ file"}
    )
    warnings: Dict[str, Any] = Field(
        description="警告（総数と先頭N件） / Warning count and first N warnings",
        example={"count": 0, "byCode": {}, "items": []}
    )
    stats: Dict[str, Any] = Field(
        default={},
        description="チャンク管理の統計 / Chunk manager statistics"
    )
    layers: Optional[List[Dict[str, Any]]] = Field(
        default=None,
        description="レイヤー情報 / Layer summary from the analysis"
    )

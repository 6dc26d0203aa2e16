from typing import List, Optional, Union

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from starlette.concurrency import run_in_threadpool

from api.helpers import (
    cleanup_temp_dir,
    get_pipeline,
    normalize_positive_int,
    parse_csv_list,
    read_uploads,
)
from config import DEBUG_LOG_DIR, PIPELINE_DEFAULTS
from models.request_models import PreviewRequestOptions
from models.response_models import (
    AnalyzeResponse,
    CacheClearResponse,
    CacheStatsResponse,
    CoordinateSystemInfo,
    CoordinateSystemListResponse,
    PreviewResponse,
)
from services.geoloader import (
    GeoLoaderError,
    GeoLoaderPipeline,
    InvalidHeaderError,
    MemoryLimitExceededError,
    UnknownCoordinateSystemError,
    UnsupportedFormatError,
)
from services.geoloader.core.constants import EPSG_WGS84

router = APIRouter()


def to_http_exception(error: GeoLoaderError) -> HTTPException:
    """ジオローダーの例外をHTTPステータスに対応付ける / Map a typed load failure to an HTTP error."""
    if isinstance(error, (InvalidHeaderError, UnsupportedFormatError)):
        return HTTPException(status_code=400, detail=f"ファイルを読み込めません: {error.message}")
    if isinstance(error, UnknownCoordinateSystemError):
        return HTTPException(status_code=422, detail=f"未登録の座標系です: {error.code}")
    if isinstance(error, MemoryLimitExceededError):
        return HTTPException(
            status_code=413,
            detail=(
                f"メモリ上限を超えました（{error.used_mb:.1f}MB > {error.limit_mb}MB、"
                f"{error.feature_count}フィーチャ）。max_memory_mb を増やすか、ファイルを分割してください。"
            ),
        )
    return HTTPException(status_code=400, detail=error.message)


# --- ファイル解析 ---
@router.post(
    "/api/geo/analyze",
    summary="Geospatial File Analysis",
    tags=["Geo Loading"],
    response_model=AnalyzeResponse,
    responses={
        200: {"description": "Layers, bounds, detected coordinate system and a preview sample"},
        400: {"description": "Unsupported file, invalid header, or empty upload"},
        413: {"description": "File too large"},
        500: {"description": "Analysis error"},
    },
)
async def analyze_files(
    files: List[UploadFile] = File(
        ...,
        description="メインファイルと付属ファイル（例: parcels.shp, parcels.dbf, parcels.prj） / Main file plus companions",
    ),
    debug: bool = Form(False, description="デバッグログ出力を有効化"),
    pipeline: GeoLoaderPipeline = Depends(get_pipeline),
):
    """
    ファイルの先頭レコードを解析し、レイヤー・範囲・座標系を返します。

    Analyze the first records of an upload without reading it completely.

    **対応形式 / Formats**:
    - `.shp` (+ `.dbf` attributes, `.prj` projection, `.cpg` encoding)
    - `.dxf` (layer table, blocks)
    - `.csv` / `.txt` / `.tsv` (delimiter and X/Y/Z column detection)
    - `.geojson` / `.json`

    **座標系検出 / CRS Detection**:
    1. PRJ / embedded CRS metadata (confidence 0.9)
    2. Coordinate range against registered envelopes
    3. Numeral pattern heuristics on sampled coordinates
    4. WGS84 default (confidence 0.1)

    **出力 / Output**:
    - Layers with feature counts, geometry types and DXF visibility flags
    - Bounds, detected CRS with confidence and strategy
    - Preview sample (first records) and aggregated warnings
    """
    tmpdirs: List[str] = []
    try:
        inputs = await read_uploads(files, tmpdirs)
        analysis = await run_in_threadpool(pipeline.analyze_files, inputs, debug)
        main_group, _ = pipeline.select_input(inputs)
        return AnalyzeResponse(success=True, file_name=main_group.name, analysis=analysis.to_dict())
    except HTTPException:
        raise
    except GeoLoaderError as e:
        raise to_http_exception(e)
    except Exception as e:
        import traceback
        traceback.print_exc()
        raise HTTPException(status_code=500, detail=f"解析でエラー: {str(e)}")
    finally:
        for tmpdir in tmpdirs:
            cleanup_temp_dir(tmpdir, label="tmpdir")


# --- プレビュー生成 ---
@router.post(
    "/api/geo/preview",
    summary="Geospatial Preview",
    tags=["Geo Loading"],
    response_model=PreviewResponse,
    responses={
        200: {"description": "Categorized preview (points / lines / polygons) in the target system"},
        400: {"description": "Unsupported file, invalid header, invalid parameters, or empty upload"},
        413: {"description": "File too large or memory ceiling exceeded"},
        422: {"description": "Unknown coordinate system"},
        500: {"description": "Preview error"},
    },
)
async def preview_files(
    files: List[UploadFile] = File(
        ...,
        description="メインファイルと付属ファイル / Main file plus companions",
    ),
    target_coordinate_system: str = Form(
        EPSG_WGS84,
        description="出力座標系 / Target coordinate system",
        example="EPSG:4326",
    ),
    source_coordinate_system: Optional[str] = Form(
        None,
        description="入力座標系の指定（未指定で自動検出） / Source system override",
        example="EPSG:2056",
    ),
    selected_layers: Optional[str] = Form(
        None,
        description="表示レイヤー（カンマ区切り、未指定で全レイヤー） / Visible layers, comma separated",
        example="Buildings,Roads",
    ),
    max_preview_features: Union[int, str, None] = Form(
        None,
        description="プレビューの最大フィーチャ数 / Maximum preview features",
        example=5000,
    ),
    chunk_size: Union[int, str, None] = Form(
        None,
        description="チャンクあたりのフィーチャ数 / Features per chunk",
        example=1000,
    ),
    max_memory_mb: Union[int, str, None] = Form(
        None,
        description="メモリ上限 (MB) / Memory ceiling",
        example=512,
    ),
    smart_sampling: bool = Form(True, description="グリッドサンプリングを使用 / Grid sampling"),
    enable_caching: bool = Form(True, description="プレビューキャッシュを使用 / Preview cache"),
    simplify_tolerance: float = Form(0.0, description="簡略化許容差（0で無効） / Simplification tolerance"),
    debug: bool = Form(False, description="デバッグログ出力を有効化"),
    pipeline: GeoLoaderPipeline = Depends(get_pipeline),
):
    """
    ファイル全体を読み込み、表示用のプレビューを生成します。

    Load the whole upload and build a bounded, categorized preview.

    **処理の流れ / Flow**:
    - Parse → detect source CRS (sampled) → batch reprojection
    - Chunked loading with a memory ceiling (streaming mode above the size threshold)
    - Layer filter → grid sampling → categorization → preview cache

    **オプション / Options**:
    - `target_coordinate_system`: output system (default EPSG:4326)
    - `source_coordinate_system`: skip detection and use this system
    - `selected_layers`: comma-separated visible layers (all when omitted)
    - `max_preview_features`, `chunk_size`, `max_memory_mb`
    - `smart_sampling`: grid sampling (true) or truncation (false)
    - `enable_caching`: reuse previews for identical file + options
    - `simplify_tolerance`: line/polygon simplification in target units

    **出力 / Output**:
    - `preview.points` / `preview.lines` / `preview.polygons` FeatureCollections
    - `totalCount`, `visibleCount`, `bounds`, `displayBounds` (10% padding)
    - Detection result, aggregated warnings, cache flag, chunk statistics
    """
    tmpdirs: List[str] = []
    try:
        request_options = PreviewRequestOptions(
            target_coordinate_system=target_coordinate_system.strip() or EPSG_WGS84,
            source_coordinate_system=source_coordinate_system.strip() if source_coordinate_system and source_coordinate_system.strip() else None,
            selected_layers=parse_csv_list(selected_layers),
            max_preview_features=normalize_positive_int(
                max_preview_features, PIPELINE_DEFAULTS["max_preview_features"], "max_preview_features"
            ),
            chunk_size=normalize_positive_int(chunk_size, PIPELINE_DEFAULTS["chunk_size"], "chunk_size"),
            max_memory_mb=normalize_positive_int(max_memory_mb, PIPELINE_DEFAULTS["max_memory_mb"], "max_memory_mb"),
            smart_sampling=smart_sampling,
            enable_caching=enable_caching,
            simplify_tolerance=max(0.0, simplify_tolerance),
            debug=debug,
        )
        options = request_options.to_pipeline_options(
            streaming_threshold_bytes=PIPELINE_DEFAULTS["streaming_threshold_mb"] * 1024 * 1024,
            log_dir=DEBUG_LOG_DIR if debug else None,
        )

        inputs = await read_uploads(files, tmpdirs)
        result = await run_in_threadpool(pipeline.load_preview, inputs, options)
        main_group, _ = pipeline.select_input(inputs)

        print(
            f"[RESPONSE] /api/geo/preview: {result.preview.feature_count} features "
            f"({'cache' if result.from_cache else 'fresh'}), {result.warnings.total} warnings"
        )
        return PreviewResponse(
            success=True,
            file_name=main_group.name,
            coordinate_system=result.coordinate_system,
            from_cache=result.from_cache,
            preview=result.preview.to_geojson(),
            detection=result.detection.to_dict(),
            warnings=result.warnings.to_dict(),
            stats=result.stats,
            layers=[layer.to_dict() for layer in result.analysis.layers],
        )
    except HTTPException:
        raise
    except GeoLoaderError as e:
        raise to_http_exception(e)
    except Exception as e:
        import traceback
        traceback.print_exc()
        raise HTTPException(status_code=500, detail=f"プレビュー生成でエラー: {str(e)}")
    finally:
        for tmpdir in tmpdirs:
            cleanup_temp_dir(tmpdir, label="tmpdir")


# --- 座標系一覧 ---
@router.get(
    "/api/geo/coordinate-systems",
    summary="Registered Coordinate Systems",
    tags=["Coordinate Systems"],
    response_model=CoordinateSystemListResponse,
)
async def list_coordinate_systems(pipeline: GeoLoaderPipeline = Depends(get_pipeline)):
    """
    登録済みの座標系を返します。

    List the coordinate systems the pipeline can detect and convert between.
    """
    return CoordinateSystemListResponse(
        coordinate_systems=[
            CoordinateSystemInfo(
                code=system.code,
                name=system.name,
                proj4=system.proj4,
                units=system.units,
                is_geographic=system.is_geographic,
                envelope=list(system.envelope),
            )
            for system in pipeline.registry.systems()
        ],
        default_target=EPSG_WGS84,
    )


# --- キャッシュ統計 ---
@router.get(
    "/api/geo/cache/stats",
    summary="Cache Statistics",
    tags=["Coordinate Systems"],
    response_model=CacheStatsResponse,
)
async def cache_stats(pipeline: GeoLoaderPipeline = Depends(get_pipeline)):
    """
    座標変換キャッシュとプレビューキャッシュの統計を返します。

    Transformer cache and preview cache statistics (size, hits, misses).
    """
    return CacheStatsResponse(**pipeline.cache_stats())


# --- キャッシュ削除 ---
@router.delete(
    "/api/geo/cache",
    summary="Clear Caches",
    tags=["Coordinate Systems"],
    response_model=CacheClearResponse,
)
async def clear_caches(pipeline: GeoLoaderPipeline = Depends(get_pipeline)):
    """
    座標変換キャッシュとプレビューキャッシュを削除します。

    Clear both caches and reset their counters.
    """
    pipeline.clear_caches()
    return CacheClearResponse(cleared=True, message="Transformation and preview caches cleared")

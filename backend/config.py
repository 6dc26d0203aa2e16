import os
import builtins
import sys
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 環境変数でdemo/productionモードの場合、printを無効化してパフォーマンス向上
ENV = os.getenv("ENV", os.getenv("PYTHON_ENV", "development"))

if ENV in ["demo", "production"]:
    def noop_print(*args, **kwargs):
        pass
    builtins.print = noop_print
    # 起動時のメッセージのみ標準エラー出力に表示
    sys.stderr.write(f"[CONFIG] {ENV}モード: ログ出力を無効化しました\n")


# 環境変数の読み込み
from dotenv import load_dotenv

# 環境に応じた.envファイルを選択: .env.{ENV} → .env の順で探す
env_file = None
if os.path.exists(f".env.{ENV}"):
    env_file = f".env.{ENV}"
elif os.path.exists(".env"):
    env_file = ".env"

if env_file:
    load_dotenv(env_file)
    print(f"[CONFIG] 環境変数を {env_file} から読み込みました (ENV={ENV})")
else:
    print(f"[CONFIG] 環境変数ファイルが見つかりません (ENV={ENV})。環境変数から直接読み込みます。")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        print(f"[CONFIG] {name}={value!r} is not an integer, using {default}")
        return default


# 設定値
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3001")
CORS_ALLOW_ALL = os.getenv("CORS_ALLOW_ALL", "false").lower() == "true"

# ジオローダーの既定値 / Geo-loader defaults
PIPELINE_DEFAULTS = {
    "max_preview_features": _env_int("GEOLOADER_MAX_PREVIEW_FEATURES", 5000),
    "chunk_size": _env_int("GEOLOADER_CHUNK_SIZE", 1000),
    "max_memory_mb": _env_int("GEOLOADER_MAX_MEMORY_MB", 512),
    "preview_cache_ttl": _env_int("GEOLOADER_PREVIEW_CACHE_TTL", 24 * 60 * 60),
    "streaming_threshold_mb": _env_int("GEOLOADER_STREAMING_THRESHOLD_MB", 50),
    "max_upload_mb": _env_int("GEOLOADER_MAX_UPLOAD_MB", 250),
}

# 実行ログの出力先（未設定で無効） / Per-run log directory (unset disables)
DEBUG_LOG_DIR = os.getenv("GEOLOADER_DEBUG_LOG_DIR") or None

# アプリケーション設定
APP_CONFIG = {
    "title": "Geo-Loader Backend API",
    "description": """
**Geo-Loader Backend API**: geospatial file ingestion and preview service

## 主な機能 / Features

### 📂 Format Parsing
- ESRI Shapefile (.shp) with .dbf attributes and .prj pass-through
- DXF drawings with layer table and recursive block (INSERT) expansion
- Delimited point files (.csv/.txt/.tsv) with delimiter and column detection
- GeoJSON feature collections

### 🌐 Coordinate Systems
- Registry: Swiss LV95 / LV03, WGS84, Web Mercator
- Automatic detection (PRJ metadata → coordinate ranges → numeral heuristics)
- pyproj reprojection with a shared transformer cache

### 🗺️ Preview Generation
- Memory-bounded chunked loading with streaming mode for large inputs
- Grid-based spatial sampling
- Point / line / polygon categorization with bounds
- Preview cache with hit/miss statistics
    """,
    "version": "1.0.0",
    "license_info": {
        "name": "MIT",
    }
}

# OpenAPI タグのメタデータ
TAGS_METADATA = [
    {
        "name": "Geo Loading",
        "description": "Geospatial file analysis and preview (ジオデータ解析・プレビュー生成)",
    },
    {
        "name": "Coordinate Systems",
        "description": "Registered coordinate systems and cache management (座標系・キャッシュ管理)",
        "externalDocs": {
            "description": "EPSG registry",
            "url": "https://epsg.io/",
        },
    },
    {
        "name": "System",
        "description": "Health checks, diagnostics, and system information (ヘルスチェック、診断、システム情報)",
    },
]


def setup_cors(app: FastAPI) -> None:
    """CORS設定を行う"""
    print(f"\n{'='*60}")
    print(f"[CORS CONFIG] フロントエンドURL: {FRONTEND_URL}")
    print(f"[CORS CONFIG] すべてのオリジンを許可: {CORS_ALLOW_ALL}")
    print(f"[CORS CONFIG] 環境: {ENV}")
    print(f"{'='*60}\n")

    # オリジンリストを構築
    origins = []

    if CORS_ALLOW_ALL or FRONTEND_URL == "*":
        # 開発環境: ローカルホストを明示的に許可
        # allow_origins=["*"]とallow_credentials=Trueの組み合わせは使用しない
        origins.extend([
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:3001",
            "http://127.0.0.1:3001",
            "http://localhost:8080",
            "http://127.0.0.1:8080",
        ])
        print("[CORS] 🔧 開発モード: ローカルホストのみ許可")
    else:
        # 本番環境: 特定のオリジンのみを許可
        if FRONTEND_URL and FRONTEND_URL != "*":
            origins.append(FRONTEND_URL)
        print(f"[CORS] 🔒 本番モード: 特定のオリジンのみ許可")

    # CORSミドルウェアを追加
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    print(f"[CORS] 許可されたオリジン数: {len(origins)}")
    for i, origin in enumerate(origins, 1):
        print(f"[CORS]   {i}. {origin}")


def create_app() -> FastAPI:
    """FastAPIアプリケーションを作成する"""
    app = FastAPI(**APP_CONFIG, openapi_tags=TAGS_METADATA)
    setup_cors(app)
    return app

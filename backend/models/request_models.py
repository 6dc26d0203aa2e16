from pydantic import BaseModel, Field
from typing import List, Optional

from services.geoloader import PipelineOptions


class PreviewRequestOptions(BaseModel):
    """Preview load options (プレビュー生成オプション)"""

    target_coordinate_system: str = Field(
        default="EPSG:4326",
        description="出力座標系 / Target coordinate system",
        example="EPSG:4326"
    )
    source_coordinate_system: Optional[str] = Field(
        default=None,
        description="入力座標系の指定（未指定で自動検出） / Source system override (detected when omitted)",
        example="EPSG:2056"
    )
    selected_layers: Optional[List[str]] = Field(
        default=None,
        description="表示レイヤー（未指定で全レイヤー） / Visible layers (all when omitted)",
        example=["Buildings", "Roads"]
    )
    max_preview_features: int = Field(
        default=5000,
        gt=0,
        description="プレビューの最大フィーチャ数 / Maximum preview features",
        example=5000
    )
    chunk_size: int = Field(
        default=1000,
        gt=0,
        description="チャンクあたりのフィーチャ数 / Features per chunk",
        example=1000
    )
    max_memory_mb: int = Field(
        default=512,
        gt=0,
        description="メモリ上限 (MB) / Memory ceiling in MB",
        example=512
    )
    smart_sampling: bool = Field(
        default=True,
        description="グリッドサンプリングを使用 / Use grid sampling",
        example=True
    )
    enable_caching: bool = Field(
        default=True,
        description="プレビューキャッシュを使用 / Use the preview cache",
        example=True
    )
    simplify_tolerance: float = Field(
        default=0.0,
        ge=0.0,
        description="簡略化許容差（出力座標系の単位、0で無効） / Simplification tolerance in target units (0 disables)",
        example=0.0
    )
    debug: bool = Field(
        default=False,
        description="デバッグログ出力を有効化 / Enable debug logging",
        example=False
    )

    def to_pipeline_options(
        self,
        streaming_threshold_bytes: int,
        log_dir: Optional[str] = None,
    ) -> PipelineOptions:
        return PipelineOptions(
            target_coordinate_system=self.target_coordinate_system,
            source_coordinate_system=self.source_coordinate_system,
            selected_layers=set(self.selected_layers) if self.selected_layers is not None else None,
            max_preview_features=self.max_preview_features,
            chunk_size=self.chunk_size,
            max_memory_mb=self.max_memory_mb,
            smart_sampling=self.smart_sampling,
            enable_caching=self.enable_caching,
            streaming_threshold_bytes=streaming_threshold_bytes,
            simplify_tolerance=self.simplify_tolerance,
            log_dir=log_dir,
            debug=self.debug,
        )

import os
import shutil
import tempfile
import uuid
from typing import List, Optional, Union

from fastapi import HTTPException, Request, UploadFile

from config import DEBUG_LOG_DIR, PIPELINE_DEFAULTS
from services.geoloader import GeoLoaderPipeline, InputFile
from services.geoloader.preview.cache import PreviewCache

MB = 1024 * 1024


def create_pipeline() -> GeoLoaderPipeline:
    """プロセス全体で共有するパイプラインを作成 / Build the process-wide pipeline."""
    return GeoLoaderPipeline(
        preview_cache=PreviewCache(ttl_seconds=PIPELINE_DEFAULTS["preview_cache_ttl"]),
    )


def get_pipeline(request: Request) -> GeoLoaderPipeline:
    """FastAPI dependency returning the pipeline held in app.state."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        pipeline = create_pipeline()
        request.app.state.pipeline = pipeline
    return pipeline


async def save_upload_to_tmpdir(
    upload_file: UploadFile,
    suffix: str,
    max_bytes: Optional[int] = None,
    chunk_size: int = 1024 * 1024,
) -> tuple[str, str, int]:
    tmpdir = tempfile.mkdtemp()
    path = os.path.join(tmpdir, f"{uuid.uuid4()}.{suffix}")
    total = 0
    try:
        with open(path, "wb") as dst:
            while True:
                chunk = await upload_file.read(chunk_size)
                if not chunk:
                    break
                total += len(chunk)
                if max_bytes is not None and total > max_bytes:
                    raise HTTPException(
                        status_code=413,
                        detail=f"ファイルサイズが大きすぎます（最大{max_bytes // MB}MB）: {upload_file.filename}",
                    )
                dst.write(chunk)
    except BaseException:
        cleanup_temp_dir(tmpdir)
        raise
    return tmpdir, path, total


def cleanup_temp_dir(tmpdir: Optional[str], label: str = "tmpdir") -> None:
    if tmpdir and os.path.exists(tmpdir):
        try:
            shutil.rmtree(tmpdir)
        except Exception as e:
            print(f"[CLEANUP] Failed to remove {label} {tmpdir}: {e}")


async def read_uploads(files: List[UploadFile], tmpdirs: List[str]) -> List[InputFile]:
    """
    Save every upload through a temp dir (size-limited) and load it as an InputFile.

    Created temp dirs are appended to `tmpdirs`; the caller removes them in finally.
    """
    max_bytes = PIPELINE_DEFAULTS["max_upload_mb"] * MB
    inputs: List[InputFile] = []
    for upload in files:
        name = os.path.basename(upload.filename or "")
        if not name:
            raise HTTPException(status_code=400, detail="ファイル名がありません / Upload has no file name")
        suffix = os.path.splitext(name)[1].lstrip(".").lower() or "bin"
        tmpdir, path, total = await save_upload_to_tmpdir(upload, suffix, max_bytes=max_bytes)
        tmpdirs.append(tmpdir)
        if total == 0:
            raise HTTPException(status_code=400, detail=f"アップロードされたファイルが空です: {name}")
        with open(path, "rb") as src:
            inputs.append(InputFile(name=name, data=src.read(), mime_type=upload.content_type))
        print(f"[UPLOAD] received {name}: {total:,} bytes")
    return inputs


def parse_csv_list(value: Optional[str]) -> Optional[list[str]]:
    if value is not None and value.strip():
        items = [item.strip() for item in value.split(",") if item.strip()]
        return items or None
    return None


def normalize_positive_int(
    value: Union[int, str, None],
    default: int,
    param_name: str,
) -> int:
    if value is None:
        return default

    if isinstance(value, str):
        if value.strip() == "":
            return default
        try:
            parsed = int(value)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"{param_name} must be a valid integer, got: {value}",
            )
    else:
        parsed = value

    if parsed <= 0:
        raise HTTPException(
            status_code=400,
            detail=f"{param_name} must be positive, got: {parsed}",
        )
    return parsed

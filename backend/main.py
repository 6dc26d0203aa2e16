import os
import time
import uvicorn
from config import create_app
from fastapi import Request
from api.endpoints import router
from api.helpers import create_pipeline

# FastAPIアプリケーションの作成
app = create_app()

# レジストリ・変換キャッシュ・プレビューキャッシュはプロセス全体で共有
app.state.pipeline = create_pipeline()

# APIルーターの追加
app.include_router(router)


# 簡易アクセスログ用ミドルウェア（1行/リクエスト）
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    try:
        response = await call_next(request)
        dur = (time.time() - start) * 1000.0
        try:
            client = f"{request.client.host}:{request.client.port}" if request.client else "-"
        except Exception:
            client = "-"
        print(f"[ACCESS] {client} {request.method} {request.url.path} -> {response.status_code} {dur:.1f}ms")
        return response
    except Exception as e:
        dur = (time.time() - start) * 1000.0
        print(f"[ACCESS][ERROR] {request.method} {request.url.path} after {dur:.1f}ms: {e}")
        raise


def main():
    """サーバーを起動する"""
    # 環境変数から設定を取得
    port = int(os.getenv("PORT", 8001))
    env = os.getenv("ENV", os.getenv("PYTHON_ENV", "development"))
    is_production = env == "production"

    # 本番環境ではreloadを無効化、ワーカー数を設定
    reload_enabled = not is_production
    workers = int(os.getenv("WORKERS", 1 if not is_production else 2))

    registry_ok = app.state.pipeline.registry.verify()

    print(f"\n{'='*60}")
    print(f"[SERVER] 環境: {env}")
    print(f"[SERVER] ポート: {port}")
    print(f"[SERVER] リロード: {reload_enabled}")
    print(f"[SERVER] ワーカー数: {workers}")
    print(f"[SERVER] 座標系レジストリ: {'検証OK' if registry_ok else '検証失敗'}")
    print(f"{'='*60}\n")

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=reload_enabled,
        workers=workers if not reload_enabled else None,  # reloadモードではworkersは使えない
        access_log=True,
        log_level="info",
    )


if __name__ == "__main__":
    main()

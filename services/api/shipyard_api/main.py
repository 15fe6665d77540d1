from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from shipyard_common.auth import load_api_key, secret_ok
from shipyard_common.config import Settings
from shipyard_common.errors import ValidationError
from shipyard_common.logging import get_logger, setup_logging
from shipyard_common.utils import read_secret_or_empty
from shipyard_worker.runtime import Runtime, build_runtime

log = get_logger(__name__)

OPEN_PATHS = ("/health", "/docs", "/openapi.json", "/redoc")
WEBHOOK_PATH = "/v1/deployments"


def create_app(runtime: Optional[Runtime] = None, api_key: Optional[str] = None,
               webhook_secret: Optional[str] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime
        if rt is None:
            settings = Settings.from_env()
            setup_logging(settings.log_level, settings.log_format)
            rt = build_runtime(settings)
        app.state.runtime = rt
        app.state.api_key = api_key if api_key is not None else load_api_key(rt.settings.api_key_file)
        app.state.webhook_secret = (
            webhook_secret if webhook_secret is not None else read_secret_or_empty(rt.settings.webhook_secret_file)
        )
        if rt.settings.queue_backend == "memory":
            # no separate worker with the volatile queue; this process runs the pipeline
            rt.register()
        await rt.queue.start()
        log.info("api_started", queue_backend=rt.settings.queue_backend)
        try:
            yield
        finally:
            await rt.queue.close()

    app = FastAPI(title="Shipyard", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def auth_middleware(request: Request, call_next):
        if request.url.path in OPEN_PATHS:
            return await call_next(request)
        if request.method == "POST" and request.url.path == WEBHOOK_PATH:
            got = request.headers.get("X-Webhook-Secret", "")
            expected = request.app.state.webhook_secret
        else:
            got = request.headers.get("X-Shipyard-Key", "")
            expected = request.app.state.api_key
        if not secret_ok(got, expected):
            return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
        return await call_next(request)

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"success": False, "detail": str(exc)})

    def service(request: Request):
        return request.app.state.runtime.service

    @app.get("/health")
    def health(request: Request):
        h = service(request).health()
        return JSONResponse(status_code=200 if h["ok"] else 503, content=h)

    @app.post(WEBHOOK_PATH, status_code=202)
    def trigger(request: Request, payload: Dict[str, Any] = Body(...)):
        deployment_id = service(request).enqueue_deployment(payload)
        return {"success": True, "deployment_id": deployment_id, "status": "queued"}

    @app.get("/v1/deployments")
    def history(request: Request, limit: int = Query(20, ge=1, le=100), offset: int = Query(0, ge=0)):
        items = service(request).list_deployments(limit=limit, offset=offset)
        return {
            "items": [s.model_dump(mode="json") for s in items],
            "limit": limit,
            "offset": offset,
        }

    @app.get("/v1/deployments/{deployment_id}")
    def status(request: Request, deployment_id: str):
        svc = service(request)
        st = svc.get_deployment_status(deployment_id)
        if st is None:
            raise HTTPException(status_code=404, detail=f"Deployment not found: {deployment_id}")
        return {
            "status": st.model_dump(mode="json"),
            "logs": [e.model_dump(mode="json", exclude_none=True) for e in svc.get_deployment_logs(deployment_id)],
        }

    @app.get("/v1/queue")
    def queue(request: Request):
        return service(request).get_queue_counts()

    return app


app = create_app()

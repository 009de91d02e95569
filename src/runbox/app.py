"""FastAPI application exposing the execution sandbox."""

from __future__ import annotations

import logging
import secrets
import sys
from typing import Any

from . import __version__
from .config import RunnerSettings, load_settings
from .coordinator import ExecutionCoordinator
from .errors import MissingField, RunboxError, RunnerBusy, ValidationError
from .logging_utils import configure_logging
from .models import ExecutionRequest, RunResponse

logger = logging.getLogger("runbox")

RUN_PATHS = ("/run", "/api/exec/run")


def execute_payload(coordinator: ExecutionCoordinator, payload: Any) -> tuple[int, RunResponse]:
    """Run a ``{language, code}`` payload and map the outcome to (status, body)."""
    try:
        result = coordinator.execute(ExecutionRequest.from_payload(payload))
    except ValidationError as exc:
        return 400, {"success": False, "message": str(exc)}
    except RunnerBusy as exc:
        return 429, {"success": False, "message": str(exc)}
    except RunboxError as exc:
        logger.error("執行失敗：%s", exc)
        return 500, {"success": False, "message": "Execution failed", "error": str(exc)}
    return 200, result.to_response()


def create_app(settings: RunnerSettings | None = None, coordinator: ExecutionCoordinator | None = None):
    try:
        from fastapi import Body, FastAPI, Header
        from fastapi.exceptions import RequestValidationError
        from fastapi.responses import JSONResponse
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("請先安裝 server 依賴：pip install -e .[server]") from exc

    app = FastAPI(title="runbox", version=__version__)
    runtime_settings = settings or load_settings()
    runtime = coordinator or ExecutionCoordinator(runtime_settings)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "service": "runbox",
            "version": __version__,
            **runtime.health_snapshot(),
        }

    @app.get("/languages")
    def languages() -> dict[str, Any]:
        return {"languages": runtime.registry.describe()}

    @app.exception_handler(RequestValidationError)
    def invalid_body(_request, exc: RequestValidationError):  # type: ignore[no-untyped-def]
        logger.info("無法解析的 request body：%s", exc.errors())
        return JSONResponse(status_code=400, content={"success": False, "message": str(MissingField())})

    def run(payload: Any = Body(default=None), authorization: str | None = Header(default=None)):
        if runtime_settings.api_key:
            expected = f"Bearer {runtime_settings.api_key}"
            if not authorization or not secrets.compare_digest(authorization, expected):
                return JSONResponse(status_code=401, content={"success": False, "message": "unauthorized"})

        try:
            status_code, body = execute_payload(runtime, payload)
        except Exception:  # noqa: BLE001
            logger.exception("exec run 發生未預期錯誤")
            return JSONResponse(
                status_code=500,
                content={"success": False, "message": "Execution failed", "error": "runner internal error"},
            )
        return JSONResponse(status_code=status_code, content=body)

    for path in RUN_PATHS:
        app.add_api_route(path, run, methods=["POST"])

    return app


def main() -> None:
    try:
        import uvicorn

        settings = load_settings()
        configure_logging(settings.log_level, settings.log_json)
        app = create_app(settings)
        uvicorn.run(app, host=settings.host, port=settings.port)
    except Exception as exc:  # noqa: BLE001
        logger.exception("runbox 啟動失敗")
        print(f"runbox 啟動失敗：{exc}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .config import get_config
from .errors import ConfigurationError, RetrievalError
from .logging_utils import default_log_path
from .models import ChunkKind, SearchFilters
from .server import (
    configured_repositories,
    get_index_stats_op,
    index_repository_op,
    query_op,
)

logger = logging.getLogger("reposcope_admin")

MAX_QUERY_K = 100


def _get_admin_cfg() -> Dict[str, Any]:
    config = get_config()
    return {
        "enabled": config.admin_enabled,
        "host": config.admin_host,
        "port": config.admin_port,
        "api_key": config.admin_api_key,
        "allowed_ips": config.admin_allowed_ips,
    }


def _is_allowed_ip(ip: Optional[str]) -> bool:
    if not ip:
        return False
    cfg = _get_admin_cfg()
    allowed = set(cfg["allowed_ips"] or ["127.0.0.1", "::1"])
    return ip in allowed


async def require_admin(request: Request) -> Optional[JSONResponse]:
    """
    Common gate for all admin endpoints.

    - Enforce local-only IP (admin.allowed_ips)
    - Enforce X-Admin-Key header if admin.api_key is set
    """
    client = request.client
    client_ip = client.host if client else None
    cfg = _get_admin_cfg()

    if not cfg["enabled"]:
        logger.warning("Admin API called but admin.enabled=false")
        return JSONResponse({"error": "admin_disabled"}, status_code=503)

    if not _is_allowed_ip(client_ip):
        logger.warning("Admin access denied from IP %r", client_ip)
        return JSONResponse(
            {"error": "forbidden", "reason": "ip_not_allowed"},
            status_code=403,
        )

    api_key = cfg["api_key"]
    if api_key:
        header_key = request.headers.get("x-admin-key")
        if header_key != api_key:
            logger.warning("Admin access denied due to invalid API key")
            return JSONResponse({"error": "unauthorized"}, status_code=401)

    return None


def _error_response(exc: Exception, operation: str) -> JSONResponse:
    """Map failures to HTTP responses."""
    if isinstance(exc, RetrievalError):
        return JSONResponse(
            {"error": "retrieval_failed", "stage": exc.stage, "detail": str(exc)},
            status_code=502,
        )
    if isinstance(exc, ConfigurationError):
        return JSONResponse(
            {"error": "configuration_error", "detail": str(exc)},
            status_code=503,
        )
    if isinstance(exc, (KeyError, FileNotFoundError)):
        return JSONResponse({"error": "not_found", "detail": str(exc)}, status_code=404)
    logger.exception("%s failed: %s", operation, exc)
    return JSONResponse(
        {"error": "internal_error", "detail": str(exc)},
        status_code=500,
    )


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def admin_status(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    config = get_config()
    cfg = _get_admin_cfg()
    try:
        embeddings = config.embeddings
    except ConfigurationError as exc:
        return _error_response(exc, "admin_status")

    payload: Dict[str, Any] = {
        "admin": {
            "host": cfg["host"],
            "port": cfg["port"],
            "enabled": cfg["enabled"],
        },
        "repos": {name: str(path) for name, path in configured_repositories().items()},
        "index": {
            "path": str(config.index_path),
            "backend": config.index_backend,
            "table": config.index_table,
        },
        "embeddings": {
            "provider": embeddings.provider,
            "model": embeddings.model,
            "dimension": embeddings.dimension,
        },
    }
    return JSONResponse(payload)


async def admin_index(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    body = await _json_body(request)
    try:
        result = await index_repository_op(
            repo=body.get("repo"),
            path=body.get("path"),
            force=bool(body.get("force", False)),
        )
        return JSONResponse(result)
    except Exception as exc:
        return _error_response(exc, "admin_index")


async def admin_index_stats(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    repo = request.query_params.get("repo")
    try:
        return JSONResponse(get_index_stats_op(repo=repo))
    except Exception as exc:
        return _error_response(exc, "admin_index_stats")


def _filters_from_body(body: Dict[str, Any]) -> Optional[SearchFilters]:
    kinds = body.get("chunk_kinds") or []
    if isinstance(kinds, str):
        kinds = [kinds]
    if not (body.get("language") or body.get("path_prefix") or kinds):
        return None
    return SearchFilters(
        language=body.get("language"),
        path_prefix=body.get("path_prefix"),
        chunk_kinds=tuple(ChunkKind(k) for k in kinds),
    )


async def admin_query(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    body = await _json_body(request)
    query = str(body.get("query") or "").strip()
    if not query:
        return JSONResponse(
            {"error": "bad_request", "detail": "query is required"}, status_code=400
        )
    try:
        k = max(1, min(int(body.get("k", 10)), MAX_QUERY_K))
        filters = _filters_from_body(body)
    except (TypeError, ValueError) as exc:
        return JSONResponse({"error": "bad_request", "detail": str(exc)}, status_code=400)

    try:
        result = await query_op(query, k=k, filters=filters)
        return JSONResponse(result)
    except Exception as exc:
        return _error_response(exc, "admin_query")


async def admin_logs_tail(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    n_param = request.query_params.get("n", "200")
    try:
        n = max(1, min(int(n_param), 2000))
    except ValueError:
        n = 200

    log_file = get_config().log_file
    log_path = default_log_path() if log_file is None else Path(log_file).expanduser()

    if not log_path.exists():
        return JSONResponse(
            {"error": "not_found", "detail": f"log file not found: {log_path}"},
            status_code=404,
        )

    try:
        with log_path.open("r", encoding="utf-8", errors="ignore") as f:
            lines = f.readlines()
    except OSError as exc:
        return _error_response(exc, "admin_logs_tail")

    tail = lines[-n:]
    return JSONResponse({"path": str(log_path), "lines": tail})


async def admin_config_view(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    raw = dict(get_config().config_data)
    admin_section = dict(raw.get("admin") or {})
    if admin_section.get("api_key"):
        admin_section["api_key"] = "***"
    if admin_section:
        raw["admin"] = admin_section
    return JSONResponse(raw)


routes = [
    Route("/admin/status", admin_status, methods=["GET"]),
    Route("/admin/index", admin_index, methods=["POST"]),
    Route("/admin/index/stats", admin_index_stats, methods=["GET"]),
    Route("/admin/query", admin_query, methods=["POST"]),
    Route("/admin/logs/tail", admin_logs_tail, methods=["GET"]),
    Route("/admin/config", admin_config_view, methods=["GET"]),
]

app = Starlette(debug=False, routes=routes)

# CORS for a local UI during development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

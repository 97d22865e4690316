from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from omegaconf import DictConfig

from .auth import ImsTokenIssuer, TokenProvider, incoming_authorization
from .configuration import is_debug, make_settings
from .credentials import CredentialCache
from .errors import ExpressAuditError
from .job_store import JobCorrelationStore
from .logging_utils import setup_logging
from .manifest_client import ManifestClient
from .models import ManifestRequest, WebhookResponse
from .orchestrator import AuditOrchestrator
from .report_store import create_report_store
from .repository_client import RepositoryClient
from .state_store import create_state_store


def build_orchestrator(
    settings: DictConfig,
    http_client: Optional[httpx.AsyncClient] = None,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> AuditOrchestrator:
    """Wire stores, token providers and API clients from resolved settings."""
    http = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    state = create_state_store(settings.state.backend, settings.state.db_path)
    cache = CredentialCache(state)

    repository_tokens = TokenProvider(
        cache,
        ImsTokenIssuer(
            http,
            settings.ims_endpoint,
            settings.repository.client_id,
            settings.repository.client_secret,
            settings.repository.scopes,
        ),
        cache_key=settings.repository.token_cache_key,
        ttl_seconds=settings.repository.token_ttl_seconds,
        use_passed_auth=bool(settings.repository.use_passed_auth),
    )
    manifest_tokens = TokenProvider(
        cache,
        ImsTokenIssuer(
            http,
            settings.ims_endpoint,
            settings.manifest_service.client_id,
            settings.manifest_service.client_secret,
            settings.manifest_service.scopes,
        ),
        cache_key=settings.manifest_service.token_cache_key,
        ttl_seconds=settings.manifest_service.token_ttl_seconds,
        use_passed_auth=bool(settings.manifest_service.use_passed_auth),
    )

    return AuditOrchestrator(
        repository=RepositoryClient(http, repository_tokens, client_id=settings.repository.client_id),
        manifest=ManifestClient(
            http,
            manifest_tokens,
            client_id=settings.manifest_service.client_id,
            org_id=settings.manifest_service.org_id,
            endpoint=settings.manifest_service.endpoint,
        ),
        jobs=JobCorrelationStore(state),
        reports=create_report_store(
            settings.reports.backend,
            settings.reports.prefix,
            local_root=settings.reports.local_root,
            s3_bucket=settings.reports.s3_bucket,
        ),
        target_format=settings.audit.target_format,
        max_asset_size_bytes=settings.audit.max_asset_size_bytes,
        max_process_passes=settings.audit.max_process_passes,
        retry_backoff_seconds=settings.audit.retry_backoff_seconds,
        job_ttl_seconds=settings.audit.job_ttl_seconds,
        metadata_property=settings.audit.metadata_property,
        generate_report_log=bool(settings.audit.generate_report_log),
        debug=is_debug(settings),
        sleep=sleep,
    )


settings = make_settings()
setup_logging(settings.log_level)
http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
orchestrator = build_orchestrator(settings, http_client=http_client)


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await http_client.aclose()


app = FastAPI(title="Express Audit API", version="0.1.0", lifespan=lifespan)


def get_orchestrator() -> AuditOrchestrator:
    return orchestrator


@app.exception_handler(ExpressAuditError)
async def express_audit_error_handler(_: Request, exc: ExpressAuditError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


def _to_response(result: WebhookResponse) -> Response:
    if result.status_code == 204:
        return Response(status_code=204)
    return JSONResponse(status_code=result.status_code, content=result.body)


async def _read_payload(request: Request) -> Dict[str, Any]:
    incoming_authorization.set(request.headers.get("authorization"))
    try:
        payload = await request.json()
    except json.JSONDecodeError as exc:  # noqa: BLE001
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be a JSON object")
    return payload


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/webhooks/asset-processed")
@app.get("/webhooks/manifest-complete")
def webhook_challenge(challenge: str = Query(...)) -> Dict[str, str]:
    return {"challenge": challenge}


@app.post("/webhooks/asset-processed")
async def on_asset_processed(request: Request, manager: AuditOrchestrator = Depends(get_orchestrator)) -> Response:
    payload = await _read_payload(request)
    return _to_response(await manager.handle_asset_event(payload))


@app.post("/webhooks/manifest-complete")
async def on_manifest_complete(request: Request, manager: AuditOrchestrator = Depends(get_orchestrator)) -> Response:
    payload = await _read_payload(request)
    return _to_response(await manager.handle_manifest_event(payload))


@app.get("/assets/metadata")
async def asset_metadata(
    request: Request,
    host: str = Query(...),
    path: str = Query(...),
    manager: AuditOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    incoming_authorization.set(request.headers.get("authorization"))
    data = await manager.repository.fetch_asset_metadata(host, path)
    return {"host": host, "path": path, "assetData": data}


@app.get("/assets/presigned-url")
async def asset_presigned_url(
    request: Request,
    host: str = Query(...),
    path: str = Query(...),
    manager: AuditOrchestrator = Depends(get_orchestrator),
) -> Dict[str, str]:
    incoming_authorization.set(request.headers.get("authorization"))
    url = await manager.repository.fetch_presigned_download_url(host, path)
    return {"presignedUrl": url}


@app.post("/manifests")
async def request_manifest(
    body: ManifestRequest,
    request: Request,
    manager: AuditOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    incoming_authorization.set(request.headers.get("authorization"))
    submission = await manager.manifest.submit_manifest_request(body.presigned_url, emit_event=body.emit_event)
    return {"jobId": submission.job_id, "manifestRequest": submission.raw}


@app.post("/audits")
async def run_audit(request: Request, manager: AuditOrchestrator = Depends(get_orchestrator)) -> Response:
    payload = await _read_payload(request)
    return _to_response(await manager.handle_audit_request(payload))


@app.get("/reports/summary")
def report_summary(manager: AuditOrchestrator = Depends(get_orchestrator)) -> Response:
    return _to_response(manager.report_summary())


@app.delete("/reports")
def clean_reports(manager: AuditOrchestrator = Depends(get_orchestrator)) -> Response:
    return _to_response(manager.clean_reports())

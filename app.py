# app.py - Training Sync server
# - Partitioned data endpoints over the configured KV store
# - GitHub mirror proxy/publish (token never leaves the server in responses)

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from env_validation import ConfigurationError, settings_snapshot, validate_environment
from mirror import MirrorError, MirrorPublisher, MirrorTarget
from remote_store import InvalidKeyError, RemotePartitionedStore

logger = logging.getLogger(__name__)

_APP_LOGGER = logging.getLogger("training_sync")
if not _APP_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    _APP_LOGGER.addHandler(_handler)
_APP_LOGGER.setLevel(logging.INFO)
_APP_LOGGER.propagate = False

NO_CACHE_HEADERS = {"Cache-Control": "no-cache, no-store, must-revalidate"}

_STORE: Optional[RemotePartitionedStore] = None
_PUBLISHER: Optional[MirrorPublisher] = None


def _store() -> RemotePartitionedStore:
    global _STORE
    if _STORE is None:
        _STORE = RemotePartitionedStore.from_env()
    return _STORE


def _publisher() -> MirrorPublisher:
    global _PUBLISHER
    if _PUBLISHER is None:
        _PUBLISHER = MirrorPublisher()
    return _PUBLISHER


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        validate_environment()
        store = _store()
        _APP_LOGGER.info("Training sync server starting (KV configured: %s)", store.configured)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Training Sync", version="1.0.0", lifespan=_lifespan)


def _error(message: str, status_code: int, *, details: Optional[str] = None, headers=None) -> JSONResponse:
    content: Dict[str, Any] = {"error": message}
    if details:
        content["details"] = details
    return JSONResponse(content, status_code=status_code, headers=headers)


@app.exception_handler(RequestValidationError)
async def _invalid_request(_: Request, exc: RequestValidationError) -> JSONResponse:
    return _error("Invalid request body.", 400, details=str(exc.errors()))


# ---------- Request bodies ----------
class UpdateBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    users: Optional[List[Any]] = None
    quizzes: Optional[List[Any]] = None
    settings: Optional[Dict[str, Any]] = None
    module_categories: Optional[List[Any]] = Field(default=None, alias="moduleCategories")


class PartialUpdateBody(BaseModel):
    key: Optional[str] = None
    value: Any = None


class GithubProxyBody(BaseModel):
    owner: Optional[str] = None
    repo: Optional[str] = None
    path: Optional[str] = None
    pat: Optional[str] = None


class PublishBody(BaseModel):
    settings: Optional[Dict[str, Any]] = None
    data: Optional[Dict[str, Any]] = None


# ---------- Partitioned data ----------
@app.get("/api/data")
def read_data():
    try:
        return _store().read()
    except ConfigurationError as exc:
        return _error(str(exc), 500)
    except Exception as exc:
        logging.getLogger("training_sync.api").exception("Failed to fetch data from KV: %s", exc)
        return _error("Failed to fetch data", 500, details=str(exc))


@app.post("/api/update")
def update_data(body: UpdateBody):
    store = _store()
    if not store.configured:
        return _error("KV store is not configured.", 500)
    if body.users is None or body.quizzes is None or body.settings is None:
        return _error("Invalid data structure", 400)

    payload: Dict[str, Any] = {"users": body.users, "quizzes": body.quizzes, "settings": body.settings}
    if body.module_categories is not None:
        payload["moduleCategories"] = body.module_categories
    try:
        store.write_all(payload)
    except Exception as exc:
        logging.getLogger("training_sync.api").exception("Failed to save data to KV: %s", exc)
        return _error("Failed to save data", 500, details=str(exc))
    return {"success": True}


@app.post("/api/update-partial")
def update_partial(body: PartialUpdateBody):
    store = _store()
    if not store.configured:
        return _error("KV store is not configured.", 500)
    if not body.key or "value" not in body.model_fields_set:
        return _error("Invalid request body. 'key' and 'value' are required.", 400)
    try:
        store.write_key(body.key, body.value)
    except InvalidKeyError as exc:
        return _error(str(exc), 400)
    except Exception as exc:
        logging.getLogger("training_sync.api").exception("Failed to save partial data to KV: %s", exc)
        return _error("Failed to save partial data", 500, details=str(exc))
    return {"success": True, "key": body.key}


# ---------- GitHub mirror ----------
@app.post("/api/github-proxy")
def github_proxy(body: GithubProxyBody):
    try:
        target = MirrorTarget(
            owner=body.owner or "", repo=body.repo or "", path=body.path or "", token=body.pat or ""
        )
    except ConfigurationError as exc:
        return _error(str(exc), 400, headers=NO_CACHE_HEADERS)
    try:
        data = _publisher().fetch(target)
    except MirrorError as exc:
        return _error(exc.message, exc.status_code, headers=NO_CACHE_HEADERS)
    except Exception as exc:
        logging.getLogger("training_sync.api").exception("Mirror proxy failed: %s", exc)
        return _error(
            "An internal server error occurred in the proxy.", 500, details=str(exc), headers=NO_CACHE_HEADERS
        )
    return JSONResponse(data, headers=NO_CACHE_HEADERS)


@app.post("/api/publish-github")
def publish_github(body: PublishBody):
    if body.settings is None or body.data is None:
        return _error("Missing GitHub configuration parameters.", 400, headers=NO_CACHE_HEADERS)
    try:
        target = MirrorTarget.from_settings(body.settings)
    except ConfigurationError as exc:
        return _error(str(exc), 400, headers=NO_CACHE_HEADERS)
    try:
        result = _publisher().publish(body.data, target)
    except Exception as exc:
        logging.getLogger("training_sync.api").exception("Mirror publish failed: %s", exc)
        return _error("An internal server error occurred.", 500, details=str(exc), headers=NO_CACHE_HEADERS)
    if not result.success:
        return _error(result.message, result.status_code, headers=NO_CACHE_HEADERS)
    return JSONResponse(
        {"success": True, "message": result.message, "commit": result.commit}, headers=NO_CACHE_HEADERS
    )


@app.post("/api/sync-github")
def sync_github(payload: Dict[str, Any] = Body(...)):
    token = os.getenv("GITHUB_PAT")
    if not token:
        return _error(
            "GitHub PAT is not configured on the server. Please set the GITHUB_PAT environment variable.",
            500,
            headers=NO_CACHE_HEADERS,
        )
    if not payload.get("users") or not payload.get("quizzes") or not payload.get("settings"):
        return _error("Invalid data structure for sync", 400, headers=NO_CACHE_HEADERS)

    settings = payload["settings"] if isinstance(payload["settings"], dict) else {}
    try:
        target = MirrorTarget.from_settings(settings, token=token)
    except ConfigurationError:
        return _error(
            "GitHub repository details are not configured in application settings.",
            400,
            headers=NO_CACHE_HEADERS,
        )

    commit_message = f"Automated data sync: {datetime.now(timezone.utc).isoformat()}"
    try:
        result = _publisher().publish(payload, target, message=commit_message)
    except Exception as exc:
        logging.getLogger("training_sync.api").exception("Failed to sync data to GitHub: %s", exc)
        return _error("Failed to sync data to GitHub", 500, details=str(exc), headers=NO_CACHE_HEADERS)
    if not result.success:
        return _error(result.message, result.status_code, headers=NO_CACHE_HEADERS)
    return JSONResponse({"success": True, "commit": result.commit}, headers=NO_CACHE_HEADERS)


@app.get("/api/health")
def health():
    return {"status": "ok", **settings_snapshot()}

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from .config import get_allowed_origins, get_log_level, get_sweep_workers, sweep_enabled
from .executor import execute_api_call
from .health import check_bookmark, ping, probe_all, record_results, sweep_targets
from .models import (
    ApiCall,
    ApiCallCreate,
    ApiCallUpdate,
    ApiResponse,
    Bookmark,
    BookmarkCreate,
    BookmarkUpdate,
    Category,
    CategoryCreate,
    CategoryUpdate,
    GridPosition,
    ImportRequest,
    ReorderRequest,
    Settings,
    SettingsUpdate,
    field_errors,
    utc_now_iso,
)
from .storage import CategoryInUseError, GridCollisionError, ImportDocumentError, Storage
from .url_utils import is_absolute_url

logging.basicConfig(level=get_log_level())
logger = logging.getLogger(__name__)

state: Optional[Storage] = None
sweeper_task: Optional[asyncio.Task] = None


def get_storage() -> Storage:
    global state
    if state is None:
        state = Storage()
    return state


async def health_sweeper():
    """Re-check health-enabled bookmarks every ``healthCheckInterval`` seconds."""
    loop = asyncio.get_event_loop()
    while True:
        storage = get_storage()
        try:
            results = await loop.run_in_executor(
                None, probe_all, sweep_targets(storage), get_sweep_workers()
            )
            record_results(storage, results)
        except Exception:
            logger.exception("Scheduled health sweep failed")
        await asyncio.sleep(storage.get_settings().health_check_interval)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    global sweeper_task
    get_storage()
    if sweep_enabled():
        sweeper_task = asyncio.create_task(health_sweeper())
    yield
    if sweeper_task:
        sweeper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper_task
        sweeper_task = None


app = FastAPI(title="LinkDeck", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- error mapping ---


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": errors})


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST, content={"detail": field_errors(exc)}
    )


@app.exception_handler(GridCollisionError)
async def grid_collision_handler(request: Request, exc: GridCollisionError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc), "occupantId": exc.occupant_id},
    )


@app.exception_handler(CategoryInUseError)
async def category_in_use_handler(request: Request, exc: CategoryInUseError):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(ImportDocumentError)
async def import_error_handler(request: Request, exc: ImportDocumentError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


def _no_content() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- liveness / ping ---


@app.get("/api/health")
async def liveness() -> Dict[str, str]:
    return {"status": "ok", "timestamp": utc_now_iso()}


@app.get("/api/health/ping")
async def ping_url(url: str = "") -> Dict[str, Any]:
    if not url or not is_absolute_url(url):
        raise HTTPException(400, "URL is required")
    return await asyncio.get_event_loop().run_in_executor(None, ping, url)


# --- categories ---


@app.get("/api/categories")
async def list_categories(storage: Storage = Depends(get_storage)) -> List[Category]:
    return storage.get_categories()


@app.get("/api/categories/{category_id}")
async def get_category(category_id: str, storage: Storage = Depends(get_storage)) -> Category:
    category = storage.get_category(category_id)
    if not category:
        raise HTTPException(404, "Category not found")
    return category


@app.post("/api/categories", status_code=status.HTTP_201_CREATED)
async def create_category(payload: CategoryCreate, storage: Storage = Depends(get_storage)) -> Category:
    return storage.create_category(payload)


@app.post("/api/categories/reorder")
async def reorder_categories(payload: ReorderRequest, storage: Storage = Depends(get_storage)) -> List[Category]:
    return storage.reorder_categories(payload.ids)


@app.patch("/api/categories/{category_id}")
async def update_category(
    category_id: str, payload: CategoryUpdate, storage: Storage = Depends(get_storage)
) -> Category:
    category = storage.update_category(category_id, payload)
    if not category:
        raise HTTPException(404, "Category not found")
    return category


@app.delete("/api/categories/{category_id}")
async def delete_category(category_id: str, storage: Storage = Depends(get_storage)):
    if not storage.delete_category(category_id):
        raise HTTPException(404, "Category not found")
    return _no_content()


# --- bookmarks ---


@app.get("/api/bookmarks")
async def list_bookmarks(
    category_id: Optional[str] = Query(None, alias="categoryId"),
    storage: Storage = Depends(get_storage),
) -> List[Bookmark]:
    if category_id:
        return storage.get_bookmarks_by_category(category_id)
    return storage.get_bookmarks()


@app.post("/api/bookmarks/health")
async def check_all_bookmarks(storage: Storage = Depends(get_storage)) -> List[Bookmark]:
    results = await asyncio.get_event_loop().run_in_executor(
        None, probe_all, sweep_targets(storage), get_sweep_workers()
    )
    return record_results(storage, results)


@app.get("/api/bookmarks/{bookmark_id}")
async def get_bookmark(bookmark_id: str, storage: Storage = Depends(get_storage)) -> Bookmark:
    bookmark = storage.get_bookmark(bookmark_id)
    if not bookmark:
        raise HTTPException(404, "Bookmark not found")
    return bookmark


@app.post("/api/bookmarks", status_code=status.HTTP_201_CREATED)
async def create_bookmark(payload: BookmarkCreate, storage: Storage = Depends(get_storage)) -> Bookmark:
    return storage.create_bookmark(payload)


@app.post("/api/bookmarks/reorder")
async def reorder_bookmarks(payload: ReorderRequest, storage: Storage = Depends(get_storage)) -> List[Bookmark]:
    return storage.reorder_bookmarks(payload.ids)


@app.patch("/api/bookmarks/{bookmark_id}")
async def update_bookmark(
    bookmark_id: str, payload: BookmarkUpdate, storage: Storage = Depends(get_storage)
) -> Bookmark:
    bookmark = storage.update_bookmark(bookmark_id, payload)
    if not bookmark:
        raise HTTPException(404, "Bookmark not found")
    return bookmark


@app.patch("/api/bookmarks/{bookmark_id}/grid-position")
async def move_bookmark(
    bookmark_id: str, payload: GridPosition, storage: Storage = Depends(get_storage)
) -> Bookmark:
    bookmark = storage.update_bookmark_grid_position(bookmark_id, payload.grid_row, payload.grid_column)
    if not bookmark:
        raise HTTPException(404, "Bookmark not found")
    return bookmark


@app.post("/api/bookmarks/{bookmark_id}/health")
async def check_bookmark_health(bookmark_id: str, storage: Storage = Depends(get_storage)) -> Bookmark:
    bookmark = storage.get_bookmark(bookmark_id)
    if not bookmark:
        raise HTTPException(404, "Bookmark not found")
    try:
        result = await asyncio.get_event_loop().run_in_executor(None, check_bookmark, bookmark)
        updated = storage.update_bookmark_health(
            bookmark_id, result.health_status, result.ssl_expiry_days, result.last_health_check
        )
    except Exception as e:
        logger.exception("Failed to check health of %s", bookmark_id)
        raise HTTPException(500, "Failed to check health") from e
    if not updated:
        raise HTTPException(404, "Bookmark not found")
    return updated


@app.delete("/api/bookmarks/{bookmark_id}")
async def delete_bookmark(bookmark_id: str, storage: Storage = Depends(get_storage)):
    if not storage.delete_bookmark(bookmark_id):
        raise HTTPException(404, "Bookmark not found")
    return _no_content()


# --- api calls ---


@app.get("/api/api-calls")
async def list_api_calls(
    category_id: Optional[str] = Query(None, alias="categoryId"),
    storage: Storage = Depends(get_storage),
) -> List[ApiCall]:
    if category_id:
        return storage.get_api_calls_by_category(category_id)
    return storage.get_api_calls()


@app.get("/api/api-calls/{api_call_id}")
async def get_api_call(api_call_id: str, storage: Storage = Depends(get_storage)) -> ApiCall:
    api_call = storage.get_api_call(api_call_id)
    if not api_call:
        raise HTTPException(404, "API call not found")
    return api_call


@app.post("/api/api-calls", status_code=status.HTTP_201_CREATED)
async def create_api_call(payload: ApiCallCreate, storage: Storage = Depends(get_storage)) -> ApiCall:
    return storage.create_api_call(payload)


@app.post("/api/api-calls/reorder")
async def reorder_api_calls(payload: ReorderRequest, storage: Storage = Depends(get_storage)) -> List[ApiCall]:
    return storage.reorder_api_calls(payload.ids)


@app.patch("/api/api-calls/{api_call_id}")
async def update_api_call(
    api_call_id: str, payload: ApiCallUpdate, storage: Storage = Depends(get_storage)
) -> ApiCall:
    api_call = storage.update_api_call(api_call_id, payload)
    if not api_call:
        raise HTTPException(404, "API call not found")
    return api_call


@app.patch("/api/api-calls/{api_call_id}/grid-position")
async def move_api_call(
    api_call_id: str, payload: GridPosition, storage: Storage = Depends(get_storage)
) -> ApiCall:
    api_call = storage.update_api_call_grid_position(api_call_id, payload.grid_row, payload.grid_column)
    if not api_call:
        raise HTTPException(404, "API call not found")
    return api_call


@app.post("/api/api-calls/{api_call_id}/execute", response_model_exclude_none=True)
async def run_api_call(api_call_id: str, storage: Storage = Depends(get_storage)) -> ApiResponse:
    api_call = storage.get_api_call(api_call_id)
    if not api_call:
        raise HTTPException(404, "API call not found")
    try:
        return await asyncio.get_event_loop().run_in_executor(None, execute_api_call, api_call)
    except Exception as e:
        logger.exception("Failed to execute api call %s", api_call_id)
        raise HTTPException(500, "Failed to execute API call") from e


@app.delete("/api/api-calls/{api_call_id}")
async def delete_api_call(api_call_id: str, storage: Storage = Depends(get_storage)):
    if not storage.delete_api_call(api_call_id):
        raise HTTPException(404, "API call not found")
    return _no_content()


# --- settings ---


@app.get("/api/settings")
async def get_settings(storage: Storage = Depends(get_storage)) -> Settings:
    return storage.get_settings()


@app.patch("/api/settings")
async def update_settings(payload: SettingsUpdate, storage: Storage = Depends(get_storage)) -> Settings:
    return storage.update_settings(payload)


# --- export / import ---


@app.get("/api/config/export")
async def export_config(storage: Storage = Depends(get_storage)):
    return Response(
        content=storage.export_all(),
        media_type="application/x-yaml",
        headers={"Content-Disposition": 'attachment; filename="linkdeck-config.yaml"'},
    )


@app.post("/api/config/import")
async def import_config(request: Request, storage: Storage = Depends(get_storage)) -> Dict[str, Any]:
    """
    Accepts ``{"document": "<yaml>"}`` as JSON, or the YAML text itself as
    the request body.
    """
    raw = await request.body()
    if "application/json" in request.headers.get("content-type", ""):
        try:
            text = ImportRequest.model_validate_json(raw).document
        except ValidationError as e:
            raise ImportDocumentError("Body must be a JSON object with a 'document' string") from e
    else:
        text = raw.decode("utf-8", errors="replace")
    if not text.strip():
        raise ImportDocumentError("Document is empty")

    document = storage.import_all(text)
    return {
        "ok": True,
        "categories": len(document.categories),
        "bookmarks": len(document.bookmarks),
        "apiCalls": len(document.api_calls),
    }

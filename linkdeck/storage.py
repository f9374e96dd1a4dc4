import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .config import get_category_delete_policy, get_data_file
from .models import (
    ApiCall,
    ApiCallCreate,
    ApiCallUpdate,
    Bookmark,
    BookmarkCreate,
    BookmarkUpdate,
    Category,
    CategoryCreate,
    CategoryUpdate,
    DataDocument,
    HealthStatus,
    Settings,
    SettingsUpdate,
    field_errors,
    new_id,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_NAME = "General"
EXPORT_VERSION = 1

M = TypeVar("M", bound=BaseModel)


class StorageError(Exception):
    pass


class GridCollisionError(StorageError):
    def __init__(self, row: int, column: int, occupant_id: str):
        super().__init__(f"Grid cell ({row}, {column}) is occupied by {occupant_id}")
        self.row = row
        self.column = column
        self.occupant_id = occupant_id


class CategoryInUseError(StorageError):
    def __init__(self, category_id: str, members: int):
        super().__init__(f"Category {category_id} still holds {members} item(s)")
        self.category_id = category_id
        self.members = members


class ImportDocumentError(StorageError):
    pass


def load_document(path: Path) -> DataDocument:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return DataDocument.model_validate(data)


def save_document(path: Path, document: DataDocument):
    """
    Serialize the whole document to a sibling temp file, then rename it over
    ``path`` so a crash mid-write never leaves a truncated file behind.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(document.model_dump(mode="json", by_alias=True), indent=2)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def _merge(model: Type[M], existing: M, patch: BaseModel) -> M:
    data = existing.model_dump()
    data.update(patch.model_dump(exclude_unset=True))
    return model.model_validate(data)


def _sorted(items: Iterable[M]) -> List[M]:
    return sorted(items, key=lambda item: item.order)


def _reorder(collection: Dict[str, Any], ids: List[str]) -> int:
    changed = 0
    for index, item_id in enumerate(ids):
        item = collection.get(item_id)
        if item is None:
            continue
        collection[item_id] = item.model_copy(update={"order": index})
        changed += 1
    return changed


class Storage:
    """
    In-memory maps of every entity, mirrored to one JSON document on disk.

    Every mutating call rewrites the full document before returning. There
    is no locking: one process, one writer.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else get_data_file()
        self.categories: Dict[str, Category] = {}
        self.bookmarks: Dict[str, Bookmark] = {}
        self.api_calls: Dict[str, ApiCall] = {}
        self.users: List[Dict[str, Any]] = []
        self.settings: Dict[str, Any] = {}
        self._load()

    # --- persistence ---

    def _load(self):
        if not self.path.exists():
            logger.info("No data file at %s, starting fresh", self.path)
            self._add_default_category()
            self.save()
            return
        try:
            document = load_document(self.path)
        except (OSError, ValueError) as e:
            # ValidationError is a ValueError
            logger.exception("Could not load %s, falling back to defaults: %s", self.path, e)
            self._add_default_category()
            return
        self._apply(document)
        logger.info(
            "Loaded %d categories, %d bookmarks, %d api calls from %s",
            len(self.categories),
            len(self.bookmarks),
            len(self.api_calls),
            self.path,
        )

    def _apply(self, document: DataDocument):
        self.categories = {c.id: c for c in document.categories}
        self.bookmarks = {b.id: b for b in document.bookmarks}
        self.api_calls = {a.id: a for a in document.api_calls}
        self.users = list(document.users)
        self.settings = dict(document.settings)

    def _add_default_category(self):
        category = Category(id=new_id(), name=DEFAULT_CATEGORY_NAME, order=0)
        self.categories[category.id] = category
        return category

    def to_document(self) -> DataDocument:
        return DataDocument(
            categories=_sorted(self.categories.values()),
            bookmarks=_sorted(self.bookmarks.values()),
            api_calls=_sorted(self.api_calls.values()),
            users=self.users,
            settings=self.settings,
        )

    def save(self):
        save_document(self.path, self.to_document())

    # --- categories ---

    def get_categories(self) -> List[Category]:
        return _sorted(self.categories.values())

    def get_category(self, category_id: str) -> Optional[Category]:
        return self.categories.get(category_id)

    def create_category(self, payload: CategoryCreate) -> Category:
        category = Category(id=new_id(), **payload.model_dump())
        self.categories[category.id] = category
        self.save()
        return category

    def update_category(self, category_id: str, patch: CategoryUpdate) -> Optional[Category]:
        existing = self.categories.get(category_id)
        if existing is None:
            return None
        updated = _merge(Category, existing, patch)
        self.categories[category_id] = updated
        self.save()
        return updated

    def delete_category(self, category_id: str, policy: Optional[str] = None) -> bool:
        """
        Remove a category. What happens to its bookmarks and api calls
        depends on ``policy``: ``orphan`` leaves them pointing at the missing
        id, ``cascade`` deletes them, ``reject`` refuses while any remain.
        """
        if category_id not in self.categories:
            return False
        policy = policy or get_category_delete_policy()
        bookmark_ids = [b.id for b in self.bookmarks.values() if b.category_id == category_id]
        api_call_ids = [a.id for a in self.api_calls.values() if a.category_id == category_id]

        if policy == "reject" and (bookmark_ids or api_call_ids):
            raise CategoryInUseError(category_id, len(bookmark_ids) + len(api_call_ids))
        if policy == "cascade":
            for bookmark_id in bookmark_ids:
                del self.bookmarks[bookmark_id]
            for api_call_id in api_call_ids:
                del self.api_calls[api_call_id]

        del self.categories[category_id]
        self.save()
        return True

    def reorder_categories(self, ids: List[str]) -> List[Category]:
        _reorder(self.categories, ids)
        self.save()
        return self.get_categories()

    # --- bookmarks ---

    def get_bookmarks(self) -> List[Bookmark]:
        return _sorted(self.bookmarks.values())

    def get_bookmarks_by_category(self, category_id: str) -> List[Bookmark]:
        return _sorted(b for b in self.bookmarks.values() if b.category_id == category_id)

    def get_bookmark(self, bookmark_id: str) -> Optional[Bookmark]:
        return self.bookmarks.get(bookmark_id)

    def create_bookmark(self, payload: BookmarkCreate) -> Bookmark:
        bookmark = Bookmark(
            id=new_id(),
            health_status="unknown",
            last_health_check=None,
            ssl_expiry_days=None,
            **payload.model_dump(),
        )
        self.bookmarks[bookmark.id] = bookmark
        self.save()
        return bookmark

    def update_bookmark(self, bookmark_id: str, patch: BookmarkUpdate) -> Optional[Bookmark]:
        existing = self.bookmarks.get(bookmark_id)
        if existing is None:
            return None
        updated = _merge(Bookmark, existing, patch)
        self.bookmarks[bookmark_id] = updated
        self.save()
        return updated

    def update_bookmark_health(
        self,
        bookmark_id: str,
        status: HealthStatus,
        ssl_expiry_days: Optional[int] = None,
        checked_at: Optional[str] = None,
    ) -> Optional[Bookmark]:
        """
        Record a probe result. ``ssl_expiry_days=None`` keeps the previously
        stored value.
        """
        existing = self.bookmarks.get(bookmark_id)
        if existing is None:
            return None
        update: Dict[str, Any] = {
            "health_status": status,
            "last_health_check": checked_at or utc_now_iso(),
        }
        if ssl_expiry_days is not None:
            update["ssl_expiry_days"] = ssl_expiry_days
        updated = existing.model_copy(update=update)
        self.bookmarks[bookmark_id] = updated
        self.save()
        return updated

    def update_bookmark_grid_position(self, bookmark_id: str, row: int, column: int) -> Optional[Bookmark]:
        existing = self.bookmarks.get(bookmark_id)
        if existing is None:
            return None
        self._check_grid_cell(existing.category_id, row, column, bookmark_id)
        updated = existing.model_copy(update={"grid_row": row, "grid_column": column})
        self.bookmarks[bookmark_id] = updated
        self.save()
        return updated

    def delete_bookmark(self, bookmark_id: str) -> bool:
        if self.bookmarks.pop(bookmark_id, None) is None:
            return False
        self.save()
        return True

    def reorder_bookmarks(self, ids: List[str]) -> List[Bookmark]:
        _reorder(self.bookmarks, ids)
        self.save()
        return self.get_bookmarks()

    # --- api calls ---

    def get_api_calls(self) -> List[ApiCall]:
        return _sorted(self.api_calls.values())

    def get_api_calls_by_category(self, category_id: str) -> List[ApiCall]:
        return _sorted(a for a in self.api_calls.values() if a.category_id == category_id)

    def get_api_call(self, api_call_id: str) -> Optional[ApiCall]:
        return self.api_calls.get(api_call_id)

    def create_api_call(self, payload: ApiCallCreate) -> ApiCall:
        api_call = ApiCall(id=new_id(), **payload.model_dump())
        self.api_calls[api_call.id] = api_call
        self.save()
        return api_call

    def update_api_call(self, api_call_id: str, patch: ApiCallUpdate) -> Optional[ApiCall]:
        existing = self.api_calls.get(api_call_id)
        if existing is None:
            return None
        updated = _merge(ApiCall, existing, patch)
        self.api_calls[api_call_id] = updated
        self.save()
        return updated

    def update_api_call_grid_position(self, api_call_id: str, row: int, column: int) -> Optional[ApiCall]:
        existing = self.api_calls.get(api_call_id)
        if existing is None:
            return None
        self._check_grid_cell(existing.category_id, row, column, api_call_id)
        updated = existing.model_copy(update={"grid_row": row, "grid_column": column})
        self.api_calls[api_call_id] = updated
        self.save()
        return updated

    def delete_api_call(self, api_call_id: str) -> bool:
        if self.api_calls.pop(api_call_id, None) is None:
            return False
        self.save()
        return True

    def reorder_api_calls(self, ids: List[str]) -> List[ApiCall]:
        _reorder(self.api_calls, ids)
        self.save()
        return self.get_api_calls()

    def _check_grid_cell(self, category_id: str, row: int, column: int, moving_id: str):
        """Bookmarks and api calls share one grid per category."""
        for item in list(self.bookmarks.values()) + list(self.api_calls.values()):
            if item.id == moving_id or item.category_id != category_id:
                continue
            if item.grid_row == row and item.grid_column == column:
                raise GridCollisionError(row, column, item.id)

    # --- settings ---

    def get_settings(self) -> Settings:
        return Settings.model_validate(self.settings)

    def update_settings(self, patch: SettingsUpdate) -> Settings:
        for name in patch.model_fields_set:
            key = SettingsUpdate.model_fields[name].alias or name
            value = getattr(patch, name)
            if value is None or value == "":
                self.settings.pop(key, None)
            else:
                self.settings[key] = value
        self.save()
        return self.get_settings()

    # --- export / import ---

    def export_all(self) -> str:
        document = self.to_document().model_dump(mode="json", by_alias=True, exclude={"users"})
        payload = {"version": EXPORT_VERSION, "exportedAt": utc_now_iso(), **document}
        return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)

    def import_all(self, text: str) -> DataDocument:
        """
        Replace categories, bookmarks and api calls with the ones in ``text``
        and merge its settings over the current ones. Nothing changes unless
        the whole document validates.
        """
        try:
            raw = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ImportDocumentError(f"Document is not valid YAML: {e}") from e
        if not isinstance(raw, dict):
            raise ImportDocumentError("Document must be a mapping with categories, bookmarks and apiCalls")

        raw.pop("users", None)
        try:
            incoming = DataDocument.model_validate(raw)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in field_errors(e)
            )
            raise ImportDocumentError(f"Invalid document: {details}") from e

        for label, items in (
            ("category", incoming.categories),
            ("bookmark", incoming.bookmarks),
            ("api call", incoming.api_calls),
        ):
            ids = [item.id for item in items]
            if len(ids) != len(set(ids)):
                raise ImportDocumentError(f"Duplicate {label} ids in document")

        known = {field.alias or name for name, field in Settings.model_fields.items()}
        settings = dict(self.settings)
        for key, value in incoming.settings.items():
            if key not in known:
                logger.info("Ignoring unknown setting %r in imported document", key)
                continue
            if value is None or value == "":
                settings.pop(key, None)
            else:
                settings[key] = value
        try:
            Settings.model_validate(settings)
        except ValidationError as e:
            raise ImportDocumentError(f"Invalid settings: {e}") from e

        previous = self.to_document()
        incoming.users = self.users
        incoming.settings = settings
        self._apply(incoming)
        if not self.categories:
            self._add_default_category()
        try:
            self.save()
        except OSError:
            self._apply(previous)
            raise
        logger.info(
            "Imported %d categories, %d bookmarks, %d api calls",
            len(self.categories),
            len(self.bookmarks),
            len(self.api_calls),
        )
        return self.to_document()

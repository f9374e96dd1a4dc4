from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Type
from uuid import uuid4

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
)
from pydantic.alias_generators import to_camel

from .url_utils import is_absolute_url

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")
CARD_COLOR_IDS = (
    "default",
    "blue",
    "green",
    "purple",
    "orange",
    "pink",
    "cyan",
    "yellow",
    "red",
)

HttpMethod = Literal["GET", "POST", "PUT", "DELETE", "PATCH"]
HealthStatus = Literal["online", "offline", "unknown"]


def new_id() -> str:
    return str(uuid4())


def utc_now_iso() -> str:
    """Millisecond precision, ``Z`` suffix: ``2024-05-01T12:00:00.000Z``."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _check_name(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("Name is required")
    return value


def _check_url(value: str) -> str:
    value = value.strip()
    if not is_absolute_url(value):
        raise ValueError("Must be a valid URL")
    return value


def _check_color(value: str) -> str:
    if value not in CARD_COLOR_IDS:
        raise ValueError(f"Unknown color '{value}'")
    return value


Name = Annotated[str, AfterValidator(_check_name)]
Url = Annotated[str, AfterValidator(_check_url)]
OptionalUrl = Annotated[Optional[Url], BeforeValidator(_blank_to_none)]
OptionalText = Annotated[Optional[str], BeforeValidator(_blank_to_none)]
Color = Annotated[str, AfterValidator(_check_color)]
GridIndex = Annotated[int, Field(ge=0)]
Columns = Annotated[int, Field(ge=2, le=8)]


class CamelModel(BaseModel):
    """Snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- nested configs ---


class HealthCheckConfig(CamelModel):
    url: OptionalUrl = None
    expected_status: int = 200
    json_key: OptionalText = None
    json_value: OptionalText = None
    check_ssl: bool = False


class ResponseValidationConfig(CamelModel):
    expected_status: int = 200
    json_key: OptionalText = None
    json_value: OptionalText = None


# --- categories ---


class CategoryCreate(CamelModel):
    name: Name
    order: int = 0
    columns: Columns = 4


class Category(CategoryCreate):
    id: str


class CategoryUpdate(CamelModel):
    name: Optional[Name] = None
    order: Optional[int] = None
    columns: Optional[Columns] = None


# --- bookmarks ---


class BookmarkCreate(CamelModel):
    name: Name
    description: Optional[str] = None
    url: Url
    icon: str = "Globe"
    color: Color = "default"
    category_id: str
    health_check_enabled: bool = False
    health_check_config: Optional[HealthCheckConfig] = None
    order: int = 0
    grid_row: GridIndex = 0
    grid_column: GridIndex = 0


class Bookmark(BookmarkCreate):
    id: str
    health_status: HealthStatus = "unknown"
    last_health_check: Optional[str] = None
    ssl_expiry_days: Optional[int] = None


class BookmarkUpdate(CamelModel):
    name: Optional[Name] = None
    description: Optional[str] = None
    url: Optional[Url] = None
    icon: Optional[str] = None
    color: Optional[Color] = None
    category_id: Optional[str] = None
    health_check_enabled: Optional[bool] = None
    health_check_config: Optional[HealthCheckConfig] = None
    order: Optional[int] = None
    grid_row: Optional[GridIndex] = None
    grid_column: Optional[GridIndex] = None


# --- api calls ---


class ApiCallCreate(CamelModel):
    name: Name
    description: Optional[str] = None
    url: Url
    method: HttpMethod = "GET"
    headers: Optional[Dict[str, str]] = None
    body: Optional[str] = None
    category_id: str
    icon: str = "Zap"
    color: Color = "default"
    order: int = 0
    grid_row: GridIndex = 0
    grid_column: GridIndex = 0
    response_validation_enabled: bool = False
    response_validation_config: Optional[ResponseValidationConfig] = None


class ApiCall(ApiCallCreate):
    id: str


class ApiCallUpdate(CamelModel):
    name: Optional[Name] = None
    description: Optional[str] = None
    url: Optional[Url] = None
    method: Optional[HttpMethod] = None
    headers: Optional[Dict[str, str]] = None
    body: Optional[str] = None
    category_id: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[Color] = None
    order: Optional[int] = None
    grid_row: Optional[GridIndex] = None
    grid_column: Optional[GridIndex] = None
    response_validation_enabled: Optional[bool] = None
    response_validation_config: Optional[ResponseValidationConfig] = None


# --- settings ---


class Settings(CamelModel):
    background_image_url: OptionalUrl = None
    background_brightness: Annotated[int, Field(ge=0, le=200)] = 100
    background_opacity: Annotated[int, Field(ge=0, le=100)] = 100
    health_check_interval: Annotated[int, Field(ge=10, le=3600)] = 60


class SettingsUpdate(CamelModel):
    """
    Partial settings. A field sent as null (or an empty string) clears the
    stored value so it falls back to its default.
    """

    background_image_url: OptionalUrl = None
    background_brightness: Optional[Annotated[int, Field(ge=0, le=200)]] = None
    background_opacity: Optional[Annotated[int, Field(ge=0, le=100)]] = None
    health_check_interval: Optional[Annotated[int, Field(ge=10, le=3600)]] = None


# --- execution results ---


class ValidationResult(CamelModel):
    passed: bool
    reason: Optional[str] = None


class ApiResponse(CamelModel):
    status: int
    status_text: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: str = ""
    duration: int
    timestamp: str
    validation_result: Optional[ValidationResult] = None


class HealthResult(CamelModel):
    health_status: HealthStatus
    last_health_check: str
    ssl_expiry_days: Optional[int] = None


# --- request bodies ---


class ReorderRequest(CamelModel):
    ids: List[str]


class GridPosition(CamelModel):
    grid_row: GridIndex
    grid_column: GridIndex


class ImportRequest(CamelModel):
    document: str


# --- whole document ---


class DataDocument(CamelModel):
    """Everything persisted on disk and carried by export/import."""

    categories: List[Category] = Field(default_factory=list)
    bookmarks: List[Bookmark] = Field(default_factory=list)
    api_calls: List[ApiCall] = Field(default_factory=list)
    users: List[Dict[str, Any]] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)


def field_errors(exc: ValidationError) -> List[Dict[str, Any]]:
    """Flatten a pydantic error into JSON-safe ``{loc, msg, type}`` items."""
    return [
        {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]


def validate_payload(model: Type[BaseModel], data: Any) -> List[Dict[str, Any]]:
    """Validate ``data`` against ``model``; an empty list means it is valid."""
    try:
        model.model_validate(data)
    except ValidationError as exc:
        return field_errors(exc)
    return []

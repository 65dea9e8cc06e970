"""
Request Schemas
Pydantic contracts for every JSON body the device and client APIs accept
snake_case in Python, camelCase on the wire; datetimes normalised to aware UTC
(a timestamp without an offset is taken as UTC)
"""
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional, Type, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from utils.errors import ValidationFailure

DoseStatusLiteral = Literal['taken', 'late', 'missed', 'skipped']

M = TypeVar('M', bound=BaseModel)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Storage form of an aware datetime"""
    if value is None:
        return None
    return _as_utc(value).replace(tzinfo=None)


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AlarmStartRequest(RequestModel):
    compartment_id: int
    scheduled_at: datetime
    schedule_id: Optional[int] = None
    title: Optional[str] = Field(None, max_length=200)

    @field_validator('scheduled_at')
    def _utc(cls, v):  # noqa: N805
        return _as_utc(v)


class CommandCreateRequest(RequestModel):
    device_id: int
    kind: str = Field(..., alias='type', min_length=1, max_length=50)
    payload: Optional[Any] = None


class CommandAckRequest(RequestModel):
    command_id: int
    status: Literal['done', 'error']
    detail: Optional[str] = Field(None, max_length=500)


class DoseEventRequest(RequestModel):
    compartment_id: Optional[int] = None
    schedule_id: Optional[int] = None
    scheduled_at: datetime
    status: DoseStatusLiteral
    actual_at: Optional[datetime] = None
    delta_weight_g: Optional[float] = Field(None, ge=-1000, le=1000)
    source: Literal['auto', 'manual'] = 'auto'
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator('scheduled_at', 'actual_at')
    def _utc(cls, v):  # noqa: N805
        return _as_utc(v)


class WeightReadingItem(RequestModel):
    measured_at: datetime
    weight_g: float = Field(..., ge=-100000, le=100000)
    raw: Optional[Any] = None

    @field_validator('measured_at')
    def _utc(cls, v):  # noqa: N805
        return _as_utc(v)


class WeightsBulkRequest(RequestModel):
    readings: List[WeightReadingItem] = Field(..., min_length=1, max_length=1000)


class DeviceRegisterRequest(RequestModel):
    serial: str = Field(..., min_length=1, max_length=50)
    secret: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=100)
    timezone: Optional[str] = None

    @field_validator('timezone')
    def _validate_tz(cls, v):  # noqa: N805
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"timezone '{v}' is not a valid IANA timezone")
        return v


class PushKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class PushSubscribeRequest(RequestModel):
    endpoint: str = Field(..., min_length=1)
    keys: PushKeys
    device_info: Optional[Any] = None


class PushUnsubscribeRequest(RequestModel):
    endpoint: str = Field(..., min_length=1)


class SelfTestRequest(RequestModel):
    title: Optional[str] = Field(None, max_length=200)
    body: Optional[str] = Field(None, max_length=500)


class TokenRequest(RequestModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


def parse_request(model: Type[M], data: Any) -> M:
    """
    Validate a decoded JSON body against a request model

    Raises:
        ValidationFailure: body missing or not matching the model, with the
            pydantic error list as details
    """
    if data is None:
        raise ValidationFailure('Request body must be JSON')
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ValidationFailure(
            'Invalid input',
            details=e.errors(include_url=False, include_context=False, include_input=False)
        )

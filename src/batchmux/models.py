import typing as t
from dataclasses import asdict, dataclass
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

HttpMethod = t.Literal["GET", "POST", "PUT", "PATCH", "DELETE"]


class Priority(StrEnum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


class BatchRequest(BaseModel):
    """One logical request, as sent over the wire inside a batch."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    endpoint: str
    method: HttpMethod = "GET"
    data: t.Any = None
    priority: Priority = Priority.normal
    timestamp: float


class BatchError(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: str
    message: str
    details: t.Any = None


class BatchResponse(BaseModel):
    """Outcome of one request inside a batch. ``id`` echoes the request id."""

    model_config = ConfigDict(extra="allow")

    id: str
    success: bool
    data: t.Any = None
    error: BatchError | None = None
    timing: float | None = Field(default=None, description="Server-side duration in ms")


batch_response_list_adapter = TypeAdapter(list[BatchResponse])


class BatchEnvelope(BaseModel):
    """Body returned by the batch endpoint."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    responses: list[BatchResponse] = Field(default_factory=list)
    total_time: float | None = Field(default=None, alias="totalTime")
    batch_size: int | None = Field(default=None, alias="batchSize")


@dataclass
class BatchManagerStats:
    total_batches: int = 0
    total_requests: int = 0
    average_batch_size: float = 0.0
    requests_saved: int = 0
    efficiency: float = 0.0
    pending_requests: int = 0
    round_trips: int = 0
    fallbacks: int = 0
    failed_batches: int = 0

    def to_dict(self) -> dict[str, t.Any]:
        return asdict(self)


class RequestDescriptor(BaseModel):
    """One line of a replay file."""

    endpoint: str
    method: HttpMethod = "GET"
    data: t.Any = None
    priority: Priority = Priority.normal


request_descriptor_list_adapter = TypeAdapter(list[RequestDescriptor])

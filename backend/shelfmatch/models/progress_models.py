"""
Standardized progress-channel payload models.

Every server-sent event from the batch endpoints MUST serialize one of these
so the client can render live state by switching on ``type`` alone.
"""
from typing import List, Literal, Optional
from pydantic import BaseModel, Field


class ItemResult(BaseModel):
    """Final outcome for one detection within a batch run."""
    detection_id: str = Field(..., serialization_alias="detectionId")
    detection_index: int = Field(0, serialization_alias="detectionIndex")
    status: str                       # Outcome value, e.g. "succeeded"
    reason_code: str = Field(..., serialization_alias="reasonCode")
    reason: str = ""
    selected_key: Optional[str] = Field(None, serialization_alias="selectedKey")


class BatchSummary(BaseModel):
    succeeded: int = 0
    no_match: int = Field(0, serialization_alias="noMatch")
    needs_review: int = Field(0, serialization_alias="needsReview")
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    results: List[ItemResult] = []


class ProgressEvent(BaseModel):
    """Emitted once per completed detection; counts cover exactly the completed set."""
    type: Literal["progress"] = "progress"
    detection_index: int = Field(..., serialization_alias="detectionIndex")
    stage: str                        # Terminal stage for this item, e.g. "done", "no_match"
    message: str
    processed: int
    total: int
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    model_config = {"json_schema_extra": {
        "example": {
            "type": "progress",
            "detectionIndex": 12,
            "stage": "done",
            "message": "Selected 00012345678905",
            "processed": 7,
            "total": 40,
            "succeeded": 5,
            "failed": 1,
            "skipped": 0,
        }
    }}


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    processed: int
    total: int
    summary: BatchSummary


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


def to_sse(event: BaseModel) -> str:
    """Serialize one event as an SSE ``data:`` frame."""
    return f"data: {event.model_dump_json(by_alias=True)}\n\n"

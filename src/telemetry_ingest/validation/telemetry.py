from __future__ import annotations
from typing import Any, Dict, List, Literal
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, field_validator
from pydantic import ValidationError as PydanticValidationError
from telemetry_ingest.errors import ValidationError

USER_ID_MIN, USER_ID_MAX = 16, 64
EVENT_NAME_MAX = 100
WORKFLOW_HASH_PATTERN = r"^[0-9a-fA-F]{64}$"


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: StrictStr = Field(min_length=USER_ID_MIN, max_length=USER_ID_MAX)
    event: StrictStr = Field(min_length=1, max_length=EVENT_NAME_MAX)
    properties: Dict[str, Any]


class WorkflowPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: StrictStr = Field(min_length=USER_ID_MIN, max_length=USER_ID_MAX)
    workflow_hash: StrictStr = Field(pattern=WORKFLOW_HASH_PATTERN)
    node_count: StrictInt = Field(gt=0)
    node_types: List[StrictStr] = Field(min_length=1)
    has_trigger: StrictBool = False
    has_webhook: StrictBool = False
    complexity: Literal["simple", "medium", "complex"]
    sanitized_workflow: Dict[str, Any]

    @field_validator("workflow_hash")
    @classmethod
    def _canonical_hash(cls, v: str) -> str:
        # stored lower-case so the (workflow_hash, user_id) dedup ignores case
        return v.lower()


def _collect(exc: PydanticValidationError) -> list[dict[str, Any]]:
    errors = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ())) or "payload"
        errors.append({"field": field, "message": err.get("msg", "invalid")})
    return errors


def _validate(model: type[BaseModel], payload: Any):
    if not isinstance(payload, dict):
        raise ValidationError([{"field": "payload", "message": "payload must be an object"}])
    try:
        return model.model_validate(payload)
    except PydanticValidationError as ve:
        # every violation is reported, not just the first
        raise ValidationError(_collect(ve)) from None


def validate_event(payload: dict) -> EventPayload:
    return _validate(EventPayload, payload)


def validate_workflow(payload: dict) -> WorkflowPayload:
    return _validate(WorkflowPayload, payload)

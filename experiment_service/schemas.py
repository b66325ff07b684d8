from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(populate_by_name=True)


# --- Flag evaluation ---
class FlagEvaluateRequest(WireModel):
    project_id: Optional[str] = Field(default=None, alias="projectId")
    flag_key: Optional[str] = Field(default=None, alias="flagKey")
    visitor_id: Optional[str] = Field(default=None, alias="visitorId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    attributes: Optional[Dict[str, Any]] = None


class FlagEvaluateResponse(WireModel):
    enabled: bool
    value: Any = None
    reason: str
    flag_type: Optional[str] = Field(default=None, alias="flagType")


class BatchEvaluateRequest(WireModel):
    project_id: Optional[str] = Field(default=None, alias="projectId")
    flag_keys: Optional[List[str]] = Field(default=None, alias="flagKeys")
    visitor_id: Optional[str] = Field(default=None, alias="visitorId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    attributes: Optional[Dict[str, Any]] = None


class FlagVerdict(WireModel):
    enabled: bool
    value: Any = None


class BatchEvaluateResponse(WireModel):
    flags: Dict[str, FlagVerdict]


# --- SDK config ---
class VariantConfig(WireModel):
    key: str
    weight: int
    is_control: bool = Field(alias="isControl")
    changes: List[Any] = []
    page_url: Optional[str] = Field(default=None, alias="pageUrl")


class GoalConfig(WireModel):
    id: str
    name: str
    type: str
    selector: Optional[str] = None
    url: Optional[str] = None


class ExperimentConfig(WireModel):
    id: str
    key: str
    name: str
    status: str
    traffic_allocation: int = Field(alias="trafficAllocation")
    assigned_variant: str = Field(alias="assignedVariant")
    variants: List[VariantConfig]
    goals: List[GoalConfig]


class SdkConfigResponse(WireModel):
    experiments: List[ExperimentConfig]
    visitor_id: str = Field(alias="visitorId")
    timestamp: str


# --- SDK events ---
class SdkEvent(WireModel):
    experiment_id: Optional[str] = Field(default=None, alias="experimentId")
    variant_key: Optional[str] = Field(default=None, alias="variantKey")
    event_type: Optional[str] = Field(default=None, alias="eventType")
    event_name: Optional[str] = Field(default=None, alias="eventName")
    event_value: Optional[float] = Field(default=None, alias="eventValue")
    properties: Optional[Dict[str, Any]] = None

    def is_complete(self) -> bool:
        return all((self.experiment_id, self.variant_key, self.event_type, self.event_name))


class SdkEventsRequest(WireModel):
    project_id: Optional[str] = Field(default=None, alias="projectId")
    visitor_id: Optional[str] = Field(default=None, alias="visitorId")
    events: Optional[List[SdkEvent]] = None


class SdkEventsResponse(WireModel):
    success: bool
    tracked: int

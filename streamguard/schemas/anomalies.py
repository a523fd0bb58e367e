from datetime import datetime
from typing import Annotated, Optional, List, Dict, Any, Literal, Union, Type
from pydantic import BaseModel, Field, ConfigDict, TypeAdapter

from streamguard.models.anomaly_event import AnomalyType, Severity

# ---------------------------------------------------------------------------
# Anomaly details: one model per anomaly type, tagged by "kind"
# ---------------------------------------------------------------------------

class LocationSnapshot(BaseModel):
    """Where an activity came from, as recorded at detection time."""
    country_code: Optional[str] = Field(None, description="ISO country code")
    country: Optional[str] = Field(None, description="Country name")
    city: Optional[str] = Field(None, description="City name")
    latitude: Optional[float] = Field(None, description="Latitude")
    longitude: Optional[float] = Field(None, description="Longitude")
    activity_id: Optional[str] = Field(None, description="Activity that was geolocated")
    activity_time: Optional[datetime] = Field(None, description="Activity timestamp")

class StreamSnapshot(BaseModel):
    """One of the sessions involved in a concurrent streams anomaly."""
    session_id: str = Field(..., description="Session ID")
    device_id: str = Field(..., description="Device ID")
    device_name: Optional[str] = Field(None, description="Device name")
    client_name: Optional[str] = Field(None, description="Client application")
    country_code: str = Field(..., description="Country the session streams from")
    ip_address: Optional[str] = Field(None, description="Remote address")

class ImpossibleTravelDetails(BaseModel):
    kind: Literal["impossible_travel"] = "impossible_travel"
    description: str
    previous_location: LocationSnapshot
    current_location: LocationSnapshot
    distance_km: float
    time_diff_minutes: float
    speed_kmh: float
    previous_activity_id: str

class NewCountryDetails(BaseModel):
    kind: Literal["new_country"] = "new_country"
    description: str
    current_location: LocationSnapshot
    known_country_count: int

class NewDeviceDetails(BaseModel):
    kind: Literal["new_device"] = "new_device"
    description: str
    device_id: str
    device_name: Optional[str] = None
    client_name: Optional[str] = None
    current_location: Optional[LocationSnapshot] = None

class ConcurrentStreamsDetails(BaseModel):
    kind: Literal["concurrent_streams"] = "concurrent_streams"
    description: str
    window_minutes: int
    sessions: List[StreamSnapshot]
    device_count: int
    country_count: int

class NewLocationDetails(BaseModel):
    kind: Literal["new_location"] = "new_location"
    description: str
    current_location: LocationSnapshot

AnomalyDetails = Annotated[
    Union[
        ImpossibleTravelDetails,
        NewCountryDetails,
        NewDeviceDetails,
        ConcurrentStreamsDetails,
        NewLocationDetails,
    ],
    Field(discriminator="kind"),
]

DETAILS_BY_TYPE: Dict[AnomalyType, Type[BaseModel]] = {
    AnomalyType.IMPOSSIBLE_TRAVEL: ImpossibleTravelDetails,
    AnomalyType.NEW_COUNTRY: NewCountryDetails,
    AnomalyType.NEW_DEVICE: NewDeviceDetails,
    AnomalyType.CONCURRENT_STREAMS: ConcurrentStreamsDetails,
    AnomalyType.NEW_LOCATION: NewLocationDetails,
}

_details_adapter = TypeAdapter(AnomalyDetails)

def parse_details(data: Dict[str, Any]) -> BaseModel:
    """Validate a stored details document into its typed model."""
    return _details_adapter.validate_python(data)

# ---------------------------------------------------------------------------
# API schemas
# ---------------------------------------------------------------------------

class AnomalyResponse(BaseModel):
    """Response schema for a single anomaly."""
    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Anomaly ID")
    user_id: Optional[str] = Field(None, description="User the anomaly belongs to")
    user_name: Optional[str] = Field(None, description="User display name")
    server_id: int = Field(..., description="Server ID")
    activity_id: Optional[str] = Field(None, description="Triggering activity")
    anomaly_type: AnomalyType = Field(..., description="Anomaly type")
    severity: Severity = Field(..., description="Severity")
    details: AnomalyDetails = Field(..., description="Type-specific details")
    resolved: bool = Field(..., description="Whether the anomaly has been resolved")
    resolved_at: Optional[datetime] = Field(None, description="Resolution timestamp")
    resolved_by: Optional[str] = Field(None, description="Who resolved the anomaly")
    resolution_note: Optional[str] = Field(None, description="Resolution note")
    created_at: datetime = Field(..., description="Detection timestamp")

class Pagination(BaseModel):
    total: int = Field(..., description="Total matching rows")
    limit: int = Field(..., description="Page size")
    offset: int = Field(..., description="Page offset")
    has_more: bool = Field(..., description="Whether more rows follow this page")

class AnomalyListResponse(BaseModel):
    """Response schema for server-wide anomaly listing."""
    anomalies: List[AnomalyResponse] = Field(..., description="Anomalies, most recent first")
    severity_breakdown: Dict[str, int] = Field(..., description="Open anomalies per severity")
    pagination: Pagination

class UserAnomalyListResponse(BaseModel):
    """Response schema for a user's anomalies."""
    anomalies: List[AnomalyResponse] = Field(..., description="Anomalies, most recent first")
    unresolved_count: int = Field(..., description="Open anomalies for this user")
    pagination: Pagination

class ResolveRequest(BaseModel):
    resolved_by: Optional[str] = Field(None, description="Who is resolving")
    resolution_note: Optional[str] = Field(None, description="Resolution note")

class ResolveByIdsRequest(ResolveRequest):
    anomaly_ids: List[int] = Field(..., min_length=1, description="Anomalies to resolve")

class ResolveResponse(BaseModel):
    success: bool
    anomaly: AnomalyResponse

class BulkResolveResponse(BaseModel):
    success: bool
    resolved_count: int = Field(..., description="Number of anomalies resolved")

class DetectionResponse(BaseModel):
    activity_id: str
    anomalies: List[AnomalyResponse]

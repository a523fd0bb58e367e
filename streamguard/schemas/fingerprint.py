from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, ConfigDict

class LocationPattern(BaseModel):
    country: str = Field(..., description="ISO country code")
    city: Optional[str] = Field(None, description="City")
    latitude: Optional[float] = Field(None, description="Latitude")
    longitude: Optional[float] = Field(None, description="Longitude")
    session_count: int = Field(..., description="Activities seen here")
    last_seen_at: datetime = Field(..., description="Most recent activity seen here")

class DevicePattern(BaseModel):
    device_id: str = Field(..., description="Device ID")
    device_name: Optional[str] = Field(None, description="Device name")
    client_name: Optional[str] = Field(None, description="Client application")
    session_count: int = Field(..., description="Sessions from this device")
    last_seen_at: Optional[datetime] = Field(None, description="Most recent session start")

class FingerprintResponse(BaseModel):
    """Response schema for a user's behavioral fingerprint."""
    model_config = ConfigDict(from_attributes=True)

    user_id: str = Field(..., description="User ID")
    server_id: int = Field(..., description="Server ID")
    known_countries: List[str] = Field(..., description="Countries the user has been seen in")
    known_cities: List[str] = Field(..., description="Cities the user has been seen in")
    known_device_ids: List[str] = Field(..., description="Devices the user has used")
    known_clients: List[str] = Field(..., description="Client applications the user has used")
    location_patterns: List[LocationPattern] = Field(..., description="Per-location activity")
    device_patterns: List[DevicePattern] = Field(..., description="Per-device activity")
    hour_histogram: Dict[int, int] = Field(..., description="Activity count per UTC hour")
    avg_sessions_per_day: float = Field(..., description="Average activities per active day")
    total_sessions: int = Field(..., description="Geolocated activities folded in")
    last_calculated_at: Optional[datetime] = Field(None, description="Last recompute")

class FingerprintEnvelope(BaseModel):
    fingerprint: FingerprintResponse

from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, Field

from streamguard.schemas.anomalies import Pagination

class LocationEntry(BaseModel):
    """One geolocated activity in a user's location history."""
    id: int = Field(..., description="Location row ID")
    activity_id: str = Field(..., description="Activity ID")
    ip_address: str = Field(..., description="Client IP address")
    country_code: Optional[str] = Field(None, description="ISO country code")
    country: Optional[str] = Field(None, description="Country name")
    region: Optional[str] = Field(None, description="Region")
    city: Optional[str] = Field(None, description="City")
    latitude: Optional[float] = Field(None, description="Latitude")
    longitude: Optional[float] = Field(None, description="Longitude")
    timezone: Optional[str] = Field(None, description="Timezone")
    is_private_ip: bool = Field(..., description="Whether the address is private")
    created_at: Optional[datetime] = Field(None, description="When the location was resolved")
    activity_type: str = Field(..., description="Activity type")
    activity_name: str = Field(..., description="Activity name")
    activity_date: datetime = Field(..., description="Activity timestamp")

class LocationHistoryResponse(BaseModel):
    locations: List[LocationEntry]
    pagination: Pagination

class UniqueLocation(BaseModel):
    """A distinct place a user has been seen at."""
    country_code: Optional[str] = Field(None, description="ISO country code")
    country: Optional[str] = Field(None, description="Country name")
    city: Optional[str] = Field(None, description="City")
    latitude: Optional[float] = Field(None, description="Latitude")
    longitude: Optional[float] = Field(None, description="Longitude")
    activity_count: int = Field(..., description="Activities from this place")
    last_seen: datetime = Field(..., description="Most recent activity from this place")

class UniqueLocationsResponse(BaseModel):
    locations: List[UniqueLocation]

class LocationUser(BaseModel):
    user_id: str = Field(..., description="User ID")
    user_name: Optional[str] = Field(None, description="User name")
    activity_count: int = Field(..., description="Activities from this place")
    last_seen: datetime = Field(..., description="Most recent activity from this place")

class LocationPoint(BaseModel):
    """A map point aggregated over every user seen at it."""
    latitude: float = Field(..., description="Latitude")
    longitude: float = Field(..., description="Longitude")
    country_code: Optional[str] = Field(None, description="ISO country code")
    country: Optional[str] = Field(None, description="Country name")
    city: Optional[str] = Field(None, description="City")
    activity_count: int = Field(..., description="Activities from this point")
    last_seen: datetime = Field(..., description="Most recent activity from this point")
    users: List[LocationUser] = Field(..., description="Contributing users, most active first")

class LocationPointsResponse(BaseModel):
    locations: List[LocationPoint]

class LocationStatsResponse(BaseModel):
    total_located_activities: int = Field(..., description="Activities with a public location")
    pending_activities: int = Field(..., description="Activities waiting for geolocation")
    unique_countries: int = Field(..., description="Distinct countries")
    unique_cities: int = Field(..., description="Distinct cities")
    users_with_fingerprints: int = Field(..., description="Users with a computed fingerprint")
    unresolved_anomalies: Dict[str, int] = Field(..., description="Open anomalies per severity")
    is_backfill_running: bool = Field(False, description="Whether a backfill task is active")

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

BusStatus = Literal["on-time", "delayed", "early", "breakdown"]


class Route(BaseModel):
    """Model for a numbered bus line."""
    model_config = ConfigDict(frozen=True)

    id: str
    route_number: str
    route_name: str
    start_location: str
    end_location: str
    total_stops: int = Field(0, ge=0)
    estimated_duration: int = Field(0, ge=0)  # minutes
    is_active: bool = True


class BusStop(BaseModel):
    """Model for a boarding/alighting point."""
    model_config = ConfigDict(frozen=True)

    id: str
    stop_name: str
    stop_code: str
    latitude: float
    longitude: float
    address: str = ""
    is_active: bool = True


class Bus(BaseModel):
    """Model for a vehicle assigned to a route."""
    model_config = ConfigDict(frozen=True)

    id: str
    bus_number: str
    route_id: str
    capacity: int = Field(..., gt=0)
    current_passengers: int = Field(0, ge=0)
    is_active: bool = True

    @model_validator(mode="after")
    def check_passengers(self) -> "Bus":
        if self.current_passengers > self.capacity:
            raise ValueError("current_passengers cannot exceed capacity")
        return self


class BusLocation(BaseModel):
    """Model for a position/telemetry sample of a bus."""
    model_config = ConfigDict(frozen=True)

    id: str
    bus_id: str
    latitude: float
    longitude: float
    speed: float = Field(0.0, ge=0)
    heading: float = Field(0.0, ge=0, le=360)
    next_stop_id: Optional[str] = None
    estimated_arrival: Optional[datetime] = None
    status: BusStatus = "on-time"
    recorded_at: datetime


class Driver(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    employee_id: str
    full_name: str
    phone_number: Optional[str] = None
    license_number: Optional[str] = None
    is_verified: bool = False
    is_active: bool = False


class Passenger(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    preferred_language: str = "en"
    email: Optional[str] = None


class RouteSummary(BaseModel):
    id: str
    route_number: str
    route_name: str
    start_location: str
    end_location: str
    estimated_duration: int


class LocationSummary(BaseModel):
    """Latest location of a bus as shown in search results."""
    latitude: float
    longitude: float
    speed: float
    status: BusStatus
    estimated_arrival: Optional[datetime] = None
    next_stop: str = "Unknown"
    last_updated: datetime
    eta_minutes: int = 0


class BusResult(BaseModel):
    id: str
    bus_number: str
    current_passengers: int
    capacity: int
    location: Optional[LocationSummary] = None


class SearchResult(BaseModel):
    """One matching route with its buses and their latest locations."""
    route: RouteSummary
    buses: List[BusResult]


class RouteRef(BaseModel):
    route_number: str
    route_name: str


class LiveBus(BaseModel):
    id: str
    bus_number: str
    current_passengers: int
    capacity: int
    route: Optional[RouteRef] = None


class LiveLocation(BusLocation):
    """A bus location enriched with its bus, route and next stop."""
    bus: Optional[LiveBus] = None
    next_stop: Optional[BusStop] = None


class RouteStop(BaseModel):
    stop_sequence: int = Field(..., ge=1)
    estimated_travel_time: int = Field(..., ge=0)  # minutes from route start
    bus_stop: BusStop


class RouteDetails(Route):
    route_stops: List[RouteStop]


class LocationChange(BaseModel):
    """Change event emitted by the live update simulator."""
    event_type: Literal["INSERT", "UPDATE"]
    new: dict
    old: Optional[dict] = None


class LocationUpdate(BaseModel):
    """Request body for a driver-reported location."""
    bus_id: str
    latitude: float
    longitude: float
    speed: Optional[float] = Field(None, ge=0)
    heading: Optional[float] = Field(None, ge=0, le=360)
    next_stop_id: Optional[str] = None
    estimated_arrival: Optional[datetime] = None
    status: Optional[BusStatus] = None
    current_passengers: Optional[int] = Field(None, ge=0)


class BusStatusUpdate(BaseModel):
    bus_id: str
    is_active: Optional[bool] = None
    current_passengers: Optional[int] = Field(None, ge=0)


class PassengerBoarding(BaseModel):
    bus_id: str
    passenger_id: Optional[str] = None
    boarding_stop_id: Optional[str] = None

import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from ..errors import NotFound
from ..models.transit import Bus, BusLocation, BusStop, Driver, Passenger, Route

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


ROUTES = [
    {"id": "1", "route_number": "45A", "route_name": "Secunderabad to Gachibowli",
     "start_location": "Secunderabad Railway Station", "end_location": "Gachibowli DLF",
     "total_stops": 25, "estimated_duration": 90},
    {"id": "2", "route_number": "12B", "route_name": "KPHB to Ameerpet",
     "start_location": "KPHB Colony", "end_location": "Ameerpet Metro Station",
     "total_stops": 18, "estimated_duration": 45},
    {"id": "3", "route_number": "78C", "route_name": "Kukatpally to Begumpet",
     "start_location": "Kukatpally Housing Board", "end_location": "Begumpet Airport",
     "total_stops": 22, "estimated_duration": 60},
    {"id": "4", "route_number": "156", "route_name": "Mehdipatnam to Uppal",
     "start_location": "Mehdipatnam Bus Station", "end_location": "Uppal Depot",
     "total_stops": 30, "estimated_duration": 75},
    {"id": "5", "route_number": "290U", "route_name": "JBS to Hitec City",
     "start_location": "Jubilee Bus Station", "end_location": "Hitec City",
     "total_stops": 28, "estimated_duration": 85},
]

STOPS = [
    ("1", "Secunderabad Railway Station", "SEC001", 17.4399, 78.5017, "Secunderabad Railway Station, Hyderabad"),
    ("2", "Paradise Circle", "PAR002", 17.4326, 78.4926, "Paradise Circle, Secunderabad"),
    ("3", "Ameerpet Metro", "AME003", 17.4374, 78.4482, "Ameerpet Metro Station, Hyderabad"),
    ("4", "Punjagutta", "PUN004", 17.4239, 78.4738, "Punjagutta, Hyderabad"),
    ("5", "Banjara Hills", "BAN005", 17.4126, 78.4071, "Banjara Hills, Hyderabad"),
    ("6", "Jubilee Hills", "JUB006", 17.4239, 78.4004, "Jubilee Hills, Hyderabad"),
    ("7", "Madhapur", "MAD007", 17.4483, 78.3915, "Madhapur, Hyderabad"),
    ("8", "Gachibowli DLF", "GAC008", 17.4435, 78.3479, "Gachibowli DLF Cyber City"),
    ("9", "KPHB Colony", "KPH009", 17.4851, 78.3912, "KPHB Colony, Hyderabad"),
    ("10", "Kukatpally", "KUK010", 17.4847, 78.4138, "Kukatpally Housing Board"),
]

BUSES = [
    ("1", "TS09AB1234", "1", 45, 23),
    ("2", "TS09CD5678", "2", 40, 18),
    ("3", "TS09EF9012", "3", 50, 31),
    ("4", "TS09GH3456", "4", 45, 12),
    ("5", "TS09IJ7890", "5", 50, 28),
]

# (id, bus_id, lat, lng, speed, heading, next_stop_id, minutes to arrival, status)
LOCATIONS = [
    ("1", "1", 17.4326, 78.4926, 35.5, 180.0, "3", 5, "on-time"),
    ("2", "2", 17.4851, 78.3912, 28.2, 90.0, "10", 12, "delayed"),
    ("3", "3", 17.4847, 78.4138, 42.1, 45.0, "3", 3, "early"),
    ("4", "4", 17.3969, 78.4378, 31.8, 270.0, None, 8, "on-time"),
    ("5", "5", 17.4504, 78.3808, 25.4, 120.0, None, 6, "on-time"),
]

DRIVERS = [
    {"id": "1", "employee_id": "DRV001", "full_name": "Rajesh Kumar",
     "phone_number": "+91 9876543210", "license_number": "TS1234567890",
     "is_verified": True, "is_active": True},
    {"id": "2", "employee_id": "DRV002", "full_name": "Suresh Reddy",
     "phone_number": "+91 9876543211", "license_number": "TS1234567891",
     "is_verified": True, "is_active": True},
]

PASSENGERS = [
    {"id": "1", "full_name": "John Doe", "phone_number": "+91 9876543212",
     "preferred_language": "en", "email": "john.doe@example.com"},
    {"id": "2", "full_name": "Jane Smith", "phone_number": "+91 9876543213",
     "preferred_language": "en", "email": "jane.smith@example.com"},
]


class FixtureStore:
    """In-memory catalogue of routes, stops, buses and bus locations.

    Records are immutable; every write replaces a whole record under the
    store lock, so readers only ever see complete records. Reads return
    list copies and may be iterated without holding the lock.
    """

    def __init__(self, routes: List[Route], stops: List[BusStop], buses: List[Bus],
                 locations: List[BusLocation], drivers: Optional[List[Driver]] = None,
                 passengers: Optional[List[Passenger]] = None):
        self._lock = threading.RLock()
        self._routes = list(routes)
        self._stops = list(stops)
        self._buses = list(buses)
        self._locations = list(locations)
        self._drivers = list(drivers or [])
        self._passengers = list(passengers or [])

        route_ids = {r.id for r in self._routes}
        for bus in self._buses:
            if bus.route_id not in route_ids:
                raise ValueError(f"Bus {bus.id} references unknown route {bus.route_id}")
        bus_ids = {b.id for b in self._buses}
        for location in self._locations:
            if location.bus_id not in bus_ids:
                raise ValueError(f"Location {location.id} references unknown bus {location.bus_id}")

    @classmethod
    def seeded(cls, now: Optional[datetime] = None) -> "FixtureStore":
        """Build the reference Hyderabad dataset, timestamped relative to `now`."""
        now = now or utcnow()
        return cls(
            routes=[Route(**r) for r in ROUTES],
            stops=[
                BusStop(id=i, stop_name=name, stop_code=code, latitude=lat, longitude=lng, address=address)
                for i, name, code, lat, lng, address in STOPS
            ],
            buses=[
                Bus(id=i, bus_number=number, route_id=route_id, capacity=capacity, current_passengers=passengers)
                for i, number, route_id, capacity, passengers in BUSES
            ],
            locations=[
                BusLocation(
                    id=i, bus_id=bus_id, latitude=lat, longitude=lng, speed=speed, heading=heading,
                    next_stop_id=next_stop_id, estimated_arrival=now + timedelta(minutes=minutes),
                    status=status, recorded_at=now,
                )
                for i, bus_id, lat, lng, speed, heading, next_stop_id, minutes, status in LOCATIONS
            ],
            drivers=[Driver(**d) for d in DRIVERS],
            passengers=[Passenger(**p) for p in PASSENGERS],
        )

    # Reads

    def routes(self) -> List[Route]:
        with self._lock:
            return list(self._routes)

    def stops(self) -> List[BusStop]:
        with self._lock:
            return list(self._stops)

    def buses(self) -> List[Bus]:
        with self._lock:
            return list(self._buses)

    def locations(self) -> List[BusLocation]:
        with self._lock:
            return list(self._locations)

    def drivers(self) -> List[Driver]:
        with self._lock:
            return list(self._drivers)

    def passengers(self) -> List[Passenger]:
        with self._lock:
            return list(self._passengers)

    def get_route(self, route_id: str) -> Optional[Route]:
        return next((r for r in self.routes() if r.id == route_id), None)

    def get_bus(self, bus_id: str) -> Optional[Bus]:
        return next((b for b in self.buses() if b.id == bus_id), None)

    def get_stop(self, stop_id: Optional[str]) -> Optional[BusStop]:
        if not stop_id:
            return None
        return next((s for s in self.stops() if s.id == stop_id), None)

    def get_driver(self, driver_id: str) -> Optional[Driver]:
        return next((d for d in self.drivers() if d.id == driver_id), None)

    def find_driver(self, employee_id: str) -> Optional[Driver]:
        return next((d for d in self.drivers() if d.employee_id == employee_id), None)

    def get_passenger(self, passenger_id: str) -> Optional[Passenger]:
        return next((p for p in self.passengers() if p.id == passenger_id), None)

    def find_passenger(self, email: str) -> Optional[Passenger]:
        return next((p for p in self.passengers() if p.email == email), None)

    def current_location(self, bus_id: str) -> Optional[BusLocation]:
        """Most recent location of a bus, by `recorded_at`."""
        candidates = [loc for loc in self.locations() if loc.bus_id == bus_id]
        if not candidates:
            return None
        return max(candidates, key=lambda loc: loc.recorded_at)

    # Writes

    def _monotonic(self, location: BusLocation) -> BusLocation:
        # recorded_at is strictly increasing per bus
        latest = self.current_location(location.bus_id)
        if latest is not None and location.recorded_at <= latest.recorded_at:
            return location.model_copy(update={"recorded_at": latest.recorded_at + timedelta(microseconds=1)})
        return location

    def replace_location(self, location: BusLocation) -> BusLocation:
        """Replace the location record with the same id."""
        with self._lock:
            for index, existing in enumerate(self._locations):
                if existing.id == location.id:
                    stored = self._monotonic(location)
                    self._locations[index] = stored
                    return stored
        raise NotFound("Bus location not found", details=location.id)

    def insert_location(self, location: BusLocation) -> BusLocation:
        """Record a new current location, dropping the bus's previous one."""
        with self._lock:
            if self.get_bus(location.bus_id) is None:
                raise NotFound("Bus not found", details=location.bus_id)
            stored = self._monotonic(location)
            self._locations = [loc for loc in self._locations if loc.bus_id != location.bus_id]
            self._locations.append(stored)
            return stored

    def replace_bus(self, bus: Bus) -> Bus:
        with self._lock:
            for index, existing in enumerate(self._buses):
                if existing.id == bus.id:
                    self._buses[index] = bus
                    return bus
        raise NotFound("Bus not found", details=bus.id)

    def replace_driver(self, driver: Driver) -> Driver:
        with self._lock:
            for index, existing in enumerate(self._drivers):
                if existing.id == driver.id:
                    self._drivers[index] = driver
                    return driver
        raise NotFound("Driver not found", details=driver.id)

    def replace_passenger(self, passenger: Passenger) -> Passenger:
        with self._lock:
            for index, existing in enumerate(self._passengers):
                if existing.id == passenger.id:
                    self._passengers[index] = passenger
                    return passenger
        raise NotFound("Profile not found", details=passenger.id)

    def add_driver(self, driver: Driver) -> Driver:
        with self._lock:
            self._drivers.append(driver)
        logger.info(f"Registered driver {driver.employee_id}")
        return driver

    def add_passenger(self, passenger: Passenger) -> Passenger:
        with self._lock:
            self._passengers.append(passenger)
        logger.info(f"Registered passenger {passenger.id}")
        return passenger

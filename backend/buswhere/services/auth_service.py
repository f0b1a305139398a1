import asyncio
import base64
import hashlib
import logging
import random
import secrets
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..errors import BusWhereError, Conflict, Forbidden, InvalidInput, NotFound, Unauthorized
from ..models.auth import AuthSession, DriverSignup, DriverVerification, PassengerSignup, ProfileUpdate
from ..models.transit import Driver, Passenger
from .fixture_store import FixtureStore, new_id, utcnow
from .supabase_client import SupabaseClient, SupabaseError

logger = logging.getLogger(__name__)

OTP_LENGTH = 6
SESSION_TTL_MS = 3600 * 1000
DRIVER_EMAIL_DOMAIN = "buswhere.temp"

EDITABLE_FIELDS = {
    "passenger": {"full_name", "phone_number", "preferred_language"},
    "driver": {"full_name", "phone_number", "license_number"},
}


def epoch_ms(clock=utcnow) -> int:
    return int(clock().timestamp() * 1000)


def check_otp_format(otp: Optional[str]) -> None:
    # Only the shape is checked; issued codes are not stored or compared.
    if not otp or len(otp) != OTP_LENGTH:
        raise InvalidInput("Invalid OTP format")


def generate_otp(rng: random.Random) -> str:
    return str(rng.randint(10 ** (OTP_LENGTH - 1), 10 ** OTP_LENGTH - 1))


def driver_session_token(driver_id: str, clock=utcnow) -> str:
    return base64.b64encode(f"{driver_id}:{epoch_ms(clock)}".encode()).decode()


def _editable(user_type: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(updates) - EDITABLE_FIELDS[user_type]
    if unknown:
        raise InvalidInput("Fields cannot be updated", details=sorted(unknown))
    return updates


class AuthService(ABC):
    """Passenger and driver account operations delegated to an auth provider."""

    @abstractmethod
    async def passenger_signup(self, data: PassengerSignup) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def passenger_login(self, email: str, password: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def driver_signup(self, data: DriverSignup) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def send_driver_otp(self, employee_id: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def driver_login(self, employee_id: str, otp: Optional[str]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def verify_driver(self, data: DriverVerification) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def get_profile(self, user_id: str, user_type: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update_profile(self, data: ProfileUpdate) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def get_driver_status(self, employee_id: str) -> Dict[str, Any]:
        ...


class MockAuthService(AuthService):
    """Keeps accounts in the fixture store.

    Seeded passengers have no stored password and accept any password;
    accounts created through `passenger_signup` must match theirs.
    """

    def __init__(self, store: FixtureStore, delay: float = 0.0, clock=utcnow,
                 rng: Optional[random.Random] = None):
        self.store = store
        self.delay = delay
        self.clock = clock
        self.rng = rng or random.Random()
        self._passwords: Dict[str, str] = {}

    async def _latency(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)

    @staticmethod
    def _hash(password: str) -> str:
        return hashlib.sha256(password.encode()).hexdigest()

    async def passenger_signup(self, data):
        await self._latency()
        if self.store.find_passenger(data.email):
            raise Conflict("Email already registered")

        passenger = self.store.add_passenger(Passenger(
            id=new_id(),
            email=data.email,
            full_name=data.full_name,
            phone_number=data.phone_number,
            preferred_language=data.preferred_language,
        ))
        self._passwords[data.email] = self._hash(data.password)
        return {
            "success": True,
            "message": "Passenger account created successfully",
            "user": {"id": passenger.id, "email": passenger.email, "full_name": passenger.full_name},
        }

    async def passenger_login(self, email, password):
        await self._latency()
        passenger = self.store.find_passenger(email)
        if passenger is None:
            raise Unauthorized("Invalid credentials")
        stored = self._passwords.get(email)
        if stored is not None and stored != self._hash(password):
            raise Unauthorized("Invalid credentials")

        session = AuthSession(
            access_token=uuid.uuid4().hex,
            refresh_token=uuid.uuid4().hex,
            expires_at=epoch_ms(self.clock) + SESSION_TTL_MS,
        )
        return {
            "success": True,
            "user": {"id": passenger.id, "email": passenger.email},
            "profile": passenger.model_dump(),
            "session": session.model_dump(),
        }

    async def driver_signup(self, data):
        await self._latency()
        if self.store.find_driver(data.employee_id):
            raise Conflict("Employee ID already registered")

        self.store.add_driver(Driver(
            id=new_id(),
            employee_id=data.employee_id,
            full_name=data.full_name,
            phone_number=data.phone_number,
            license_number=data.license_number,
            is_verified=False,
            is_active=False,
        ))
        return {
            "success": True,
            "message": "Driver registration submitted. Awaiting admin verification.",
            "employee_id": data.employee_id,
        }

    async def send_driver_otp(self, employee_id):
        await self._latency()
        driver = self.store.find_driver(employee_id)
        if driver is None:
            raise NotFound("Employee ID not found")
        if not driver.is_verified or not driver.is_active:
            raise Forbidden("Driver account not verified or inactive")

        otp = generate_otp(self.rng)
        logger.info(f"Issued OTP for driver {employee_id}")
        return {"success": True, "message": "OTP sent successfully", "debug_otp": otp}

    async def driver_login(self, employee_id, otp):
        await self._latency()
        check_otp_format(otp)
        driver = self.store.find_driver(employee_id)
        if driver is None or not driver.is_verified or not driver.is_active:
            raise NotFound("Driver not found or not verified")
        return {
            "success": True,
            "driver": driver.model_dump(),
            "session_token": driver_session_token(driver.id, self.clock),
            "message": "Driver logged in successfully",
        }

    async def verify_driver(self, data):
        await self._latency()
        driver = self.store.get_driver(data.driver_id)
        if driver is None:
            raise NotFound("Driver not found", details=data.driver_id)
        self.store.replace_driver(driver.model_copy(update={
            "is_verified": data.is_verified, "is_active": data.is_active,
        }))
        return {"success": True, "message": "Driver verification updated"}

    async def get_profile(self, user_id, user_type):
        await self._latency()
        record = self.store.get_driver(user_id) if user_type == "driver" else self.store.get_passenger(user_id)
        if record is None:
            raise NotFound("Profile not found", details=user_id)
        return record.model_dump()

    async def update_profile(self, data):
        await self._latency()
        updates = _editable(data.user_type, data.updates)
        if data.user_type == "driver":
            record, model, replace = self.store.get_driver(data.user_id), Driver, self.store.replace_driver
        else:
            record, model, replace = self.store.get_passenger(data.user_id), Passenger, self.store.replace_passenger
        if record is None:
            raise NotFound("Profile not found", details=data.user_id)
        try:
            updated = model.model_validate({**record.model_dump(), **updates})
        except ValidationError as e:
            raise InvalidInput("Invalid profile update", details=str(e))
        replace(updated)
        return {"success": True, "message": "Profile updated successfully"}

    async def get_driver_status(self, employee_id):
        await self._latency()
        driver = self.store.find_driver(employee_id)
        if driver is None:
            raise NotFound("Driver not found")
        return driver.model_dump(include={"employee_id", "full_name", "is_verified", "is_active"})


class SupabaseAuthService(AuthService):
    """Accounts in Supabase Auth with profiles in the `passengers`/`drivers` tables."""

    def __init__(self, client: SupabaseClient, clock=utcnow, rng: Optional[random.Random] = None):
        self.client = client
        self.clock = clock
        self.rng = rng or random.SystemRandom()

    async def _call(self, func, *args):
        return await asyncio.to_thread(func, *args)

    async def _create_account(self, email: str, password: str, metadata: Dict[str, Any],
                              duplicate_message: str) -> Dict[str, Any]:
        try:
            return await self._call(self.client.create_user, email, password, metadata)
        except SupabaseError as e:
            if e.upstream_status in (409, 422):
                raise Conflict(duplicate_message, details=e.details)
            raise InvalidInput("Failed to create user account", details=e.details)

    async def _insert_profile(self, table: str, row: Dict[str, Any], message: str) -> None:
        try:
            await self._call(self.client.insert, table, row)
        except BusWhereError as e:
            logger.error(f"{message}: {e.details}; removing auth user {row['id']}")
            await self._call(self.client.delete_user, row["id"])
            raise SupabaseError(message, details=e.details)

    async def passenger_signup(self, data):
        user = await self._create_account(
            data.email, data.password,
            {"full_name": data.full_name, "user_type": "passenger"},
            "Email already registered",
        )
        await self._insert_profile("passengers", {
            "id": user["id"],
            "full_name": data.full_name,
            "phone_number": data.phone_number,
            "preferred_language": data.preferred_language,
        }, "Failed to create passenger profile")
        return {
            "success": True,
            "message": "Passenger account created successfully",
            "user": {"id": user["id"], "email": user.get("email"), "full_name": data.full_name},
        }

    async def passenger_login(self, email, password):
        try:
            auth = await self._call(self.client.sign_in_with_password, email, password)
        except SupabaseError as e:
            raise Unauthorized("Invalid credentials", details=e.details)

        user = auth.get("user") or {}
        profile = await self._call(self.client.select_one, "passengers", {
            "select": "*", "id": f"eq.{user.get('id')}",
        })
        expires_at = auth.get("expires_at")
        session = AuthSession(
            access_token=auth["access_token"],
            refresh_token=auth.get("refresh_token"),
            expires_at=int(expires_at) * 1000 if expires_at else epoch_ms(self.clock) + SESSION_TTL_MS,
        )
        return {"success": True, "user": user, "profile": profile, "session": session.model_dump()}

    async def driver_signup(self, data):
        existing = await self._call(self.client.select_one, "drivers", {
            "select": "employee_id", "employee_id": f"eq.{data.employee_id}",
        })
        if existing:
            raise Conflict("Employee ID already registered")

        user = await self._create_account(
            f"{data.employee_id}@{DRIVER_EMAIL_DOMAIN}", secrets.token_urlsafe(12),
            {"full_name": data.full_name, "user_type": "driver", "employee_id": data.employee_id},
            "Employee ID already registered",
        )
        await self._insert_profile("drivers", {
            "id": user["id"],
            "employee_id": data.employee_id,
            "full_name": data.full_name,
            "phone_number": data.phone_number,
            "license_number": data.license_number,
            "is_verified": False,
            "is_active": False,
        }, "Failed to create driver profile")
        return {
            "success": True,
            "message": "Driver registration submitted. Awaiting admin verification.",
            "employee_id": data.employee_id,
        }

    async def send_driver_otp(self, employee_id):
        driver = await self._call(self.client.select_one, "drivers", {
            "select": "employee_id,phone_number,is_verified,is_active",
            "employee_id": f"eq.{employee_id}",
        })
        if not driver:
            raise NotFound("Employee ID not found")
        if not driver.get("is_verified") or not driver.get("is_active"):
            raise Forbidden("Driver account not verified or inactive")

        otp = generate_otp(self.rng)
        logger.info(f"Issued OTP for driver {employee_id}")
        return {"success": True, "message": "OTP sent successfully", "debug_otp": otp}

    async def driver_login(self, employee_id, otp):
        check_otp_format(otp)
        driver = await self._call(self.client.select_one, "drivers", {
            "select": "*",
            "employee_id": f"eq.{employee_id}",
            "is_verified": "eq.true",
            "is_active": "eq.true",
        })
        if not driver:
            raise NotFound("Driver not found or not verified")
        return {
            "success": True,
            "driver": driver,
            "session_token": driver_session_token(driver["id"], self.clock),
            "message": "Driver logged in successfully",
        }

    async def verify_driver(self, data):
        rows = await self._call(self.client.update, "drivers", {"id": f"eq.{data.driver_id}"}, {
            "is_verified": data.is_verified, "is_active": data.is_active,
        })
        if not rows:
            raise NotFound("Driver not found", details=data.driver_id)
        return {"success": True, "message": "Driver verification updated"}

    async def get_profile(self, user_id, user_type):
        table = "drivers" if user_type == "driver" else "passengers"
        profile = await self._call(self.client.select_one, table, {"select": "*", "id": f"eq.{user_id}"})
        if not profile:
            raise NotFound("Profile not found", details=user_id)
        return profile

    async def update_profile(self, data):
        updates = _editable(data.user_type, data.updates)
        table = "drivers" if data.user_type == "driver" else "passengers"
        rows = await self._call(self.client.update, table, {"id": f"eq.{data.user_id}"}, updates)
        if not rows:
            raise NotFound("Profile not found", details=data.user_id)
        return {"success": True, "message": "Profile updated successfully"}

    async def get_driver_status(self, employee_id):
        driver = await self._call(self.client.select_one, "drivers", {
            "select": "employee_id,full_name,is_verified,is_active",
            "employee_id": f"eq.{employee_id}",
        })
        if not driver:
            raise NotFound("Driver not found")
        return driver

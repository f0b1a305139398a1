import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..errors import InvalidInput
from ..models.auth import DriverLogin, DriverSignup, PassengerLogin, PassengerSignup, SessionUser, StoredSession
from .auth_service import SESSION_TTL_MS, AuthService, epoch_ms
from .fixture_store import utcnow

logger = logging.getLogger(__name__)

SESSION_KEY = "auth_session"


class SessionContext:
    """Signed-in user for one client, cached in session storage.

    Constructed by the presentation layer at startup; call
    `load_session_from_storage()` to restore a previous session and
    `clear_session()` on sign-out or teardown.
    """

    def __init__(self, auth: AuthService, storage, client_id: str = "default", clock=utcnow):
        self.auth = auth
        self.storage = storage
        self.key = f"{SESSION_KEY}:{client_id}"
        self.clock = clock
        self.user: Optional[SessionUser] = None
        self.loading = False

    def load_session_from_storage(self) -> Optional[SessionUser]:
        """Restore an unexpired session; expired or unreadable ones are dropped."""
        raw = self.storage.get_data(self.key)
        if not raw:
            return None
        try:
            stored = StoredSession.model_validate(raw)
        except ValidationError:
            logger.warning(f"Discarding unreadable session {self.key}")
            self.storage.delete_data(self.key)
            return None
        if stored.expires_at <= epoch_ms(self.clock):
            self.storage.delete_data(self.key)
            return None
        self.user = stored.user
        return self.user

    def _remember(self, user: SessionUser) -> SessionUser:
        self.user = user
        stored = StoredSession(user=user, expires_at=epoch_ms(self.clock) + SESSION_TTL_MS)
        if not self.storage.set_data(self.key, stored, expiry=SESSION_TTL_MS // 1000):
            logger.warning(f"Session for {user.id} kept in memory only")
        return user

    async def sign_up(self, user_type: str, data: Dict[str, Any]) -> Optional[SessionUser]:
        """Register an account. Passengers are signed in; drivers await verification."""
        self.loading = True
        try:
            if user_type == "passenger":
                signup = _parse(PassengerSignup, data)
                response = await self.auth.passenger_signup(signup)
                await self.auth.passenger_login(signup.email, signup.password)
                user = response["user"]
                return self._remember(SessionUser(
                    id=user["id"], email=user.get("email"), user_type="passenger", profile=user,
                ))
            await self.auth.driver_signup(_parse(DriverSignup, data))
            return None
        finally:
            self.loading = False

    async def sign_in(self, user_type: str, credentials: Dict[str, Any]) -> Dict[str, Any]:
        """Sign in through the auth service and remember the user; returns the auth response."""
        self.loading = True
        try:
            if user_type == "passenger":
                login = _parse(PassengerLogin, credentials)
                response = await self.auth.passenger_login(login.email, login.password)
                user = response["user"]
                self._remember(SessionUser(
                    id=user["id"], email=user.get("email"), user_type="passenger",
                    profile=response.get("profile") or user,
                ))
                return response
            login = _parse(DriverLogin, credentials)
            response = await self.auth.driver_login(login.employee_id, login.otp)
            driver = response["driver"]
            self._remember(SessionUser(id=driver["id"], user_type="driver", profile=driver))
            return response
        finally:
            self.loading = False

    async def send_driver_otp(self, employee_id: str) -> Dict[str, Any]:
        return await self.auth.send_driver_otp(employee_id)

    def clear_session(self) -> None:
        self.storage.delete_data(self.key)
        self.user = None

    async def sign_out(self) -> None:
        self.clear_session()


def _parse(model, data: Dict[str, Any]):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidInput("Invalid account data", details=str(e))

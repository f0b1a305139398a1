import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from ..errors import BusWhereError, InvalidInput, Unauthorized, UpstreamFailure
from ..models.auth import (
    DriverLogin, DriverOTPRequest, DriverSignup, DriverVerification,
    PassengerLogin, PassengerSignup, ProfileUpdate,
)
from ..services.auth_service import AuthService
from ..services.session import SessionContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth-management", tags=["auth-management"])


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.services["auth"]


def get_session(request: Request, x_client_id: Optional[str] = Header(None)) -> SessionContext:
    """Session for the calling client, kept in the app's session storage."""
    return SessionContext(
        request.app.state.services["auth"], request.app.state.redis, client_id=x_client_id or "default",
    )


@router.post("/passenger-signup")
async def passenger_signup(payload: PassengerSignup, auth: AuthService = Depends(get_auth_service)):
    """Create a passenger account and profile."""
    try:
        return await auth.passenger_signup(payload)
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Passenger signup failed: {str(e)}")
        raise UpstreamFailure("Failed to create user account", details=str(e))


@router.post("/passenger-login")
async def passenger_login(payload: PassengerLogin, session: SessionContext = Depends(get_session)):
    try:
        return await session.sign_in("passenger", payload.model_dump())
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Passenger login failed: {str(e)}")
        raise UpstreamFailure("Failed to sign in", details=str(e))


@router.post("/driver-signup")
async def driver_signup(payload: DriverSignup, auth: AuthService = Depends(get_auth_service)):
    """Register a driver; the account stays inactive until an admin verifies it."""
    try:
        return await auth.driver_signup(payload)
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Driver signup failed: {str(e)}")
        raise UpstreamFailure("Failed to create driver account", details=str(e))


@router.post("/send-driver-otp")
async def send_driver_otp(payload: DriverOTPRequest, auth: AuthService = Depends(get_auth_service)):
    try:
        return await auth.send_driver_otp(payload.employee_id)
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Sending OTP to {payload.employee_id} failed: {str(e)}")
        raise UpstreamFailure("Failed to send OTP", details=str(e))


@router.post("/driver-login")
async def driver_login(payload: DriverLogin, session: SessionContext = Depends(get_session)):
    try:
        return await session.sign_in("driver", payload.model_dump())
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Driver login failed: {str(e)}")
        raise UpstreamFailure("Failed to sign in", details=str(e))


@router.put("/verify-driver")
async def verify_driver(payload: DriverVerification, auth: AuthService = Depends(get_auth_service)):
    """Set a driver's verified and active flags."""
    try:
        return await auth.verify_driver(payload)
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Verifying driver {payload.driver_id} failed: {str(e)}")
        raise UpstreamFailure("Failed to verify driver", details=str(e))


@router.put("/update-profile")
async def update_profile(
    payload: ProfileUpdate,
    authorization: Optional[str] = Header(None),
    auth: AuthService = Depends(get_auth_service),
):
    if not authorization:
        raise Unauthorized("Authorization header required")
    try:
        return await auth.update_profile(payload)
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Updating profile {payload.user_id} failed: {str(e)}")
        raise UpstreamFailure("Failed to update profile", details=str(e))


@router.get("/profile")
async def get_profile(
    user_id: Optional[str] = None,
    user_type: Optional[str] = None,
    auth: AuthService = Depends(get_auth_service),
):
    if not user_id or not user_type:
        raise InvalidInput("User ID and type required")
    try:
        return {"data": await auth.get_profile(user_id, user_type)}
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Fetching profile {user_id} failed: {str(e)}")
        raise UpstreamFailure("Failed to get profile", details=str(e))


@router.get("/driver-status")
async def get_driver_status(employee_id: Optional[str] = None, auth: AuthService = Depends(get_auth_service)):
    if not employee_id:
        raise InvalidInput("Employee ID required")
    try:
        return {"data": await auth.get_driver_status(employee_id)}
    except BusWhereError:
        raise
    except Exception as e:
        logger.error(f"Fetching driver status {employee_id} failed: {str(e)}")
        raise UpstreamFailure("Failed to get driver status", details=str(e))


@router.get("/session")
async def get_current_session(session: SessionContext = Depends(get_session)):
    """Return the signed-in user for this client, if the session has not expired."""
    user = session.load_session_from_storage()
    if user is None:
        raise Unauthorized("No active session")
    return {"data": user}


@router.post("/sign-out")
async def sign_out(session: SessionContext = Depends(get_session)):
    await session.sign_out()
    return {"success": True, "message": "Signed out successfully"}

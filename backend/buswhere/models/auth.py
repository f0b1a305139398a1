from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

UserType = Literal["passenger", "driver"]


class PassengerSignup(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)
    full_name: str
    phone_number: Optional[str] = None
    preferred_language: str = "en"


class PassengerLogin(BaseModel):
    email: str
    password: str


class DriverSignup(BaseModel):
    employee_id: str = Field(..., min_length=1)
    full_name: str
    phone_number: str
    license_number: str


class DriverOTPRequest(BaseModel):
    employee_id: str


class DriverLogin(BaseModel):
    employee_id: str
    # Length is checked by the auth service so the error maps to InvalidInput.
    otp: Optional[str] = None


class DriverVerification(BaseModel):
    driver_id: str
    is_verified: bool
    is_active: bool


class ProfileUpdate(BaseModel):
    user_id: str
    user_type: UserType = "passenger"
    updates: Dict[str, Any] = Field(default_factory=dict)


class AuthSession(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: int  # epoch milliseconds


class SessionUser(BaseModel):
    """The signed-in user as cached by the session context."""
    id: str
    email: Optional[str] = None
    user_type: UserType
    profile: Dict[str, Any] = Field(default_factory=dict)


class StoredSession(BaseModel):
    user: SessionUser
    expires_at: int  # epoch milliseconds

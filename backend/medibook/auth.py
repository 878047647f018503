import hashlib
import logging
import re
import secrets
from datetime import date, datetime, timedelta
from typing import Annotated, Literal, Optional, Union

from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from pydantic import Discriminator, Tag, field_validator
from sqlmodel import SQLModel, Field, Session, select

from . import security
from .config import settings
from .database import get_session
from .errors import Conflict, InvalidCredentials, ValidationFailed
from .models import User, utcnow
from .notification_service import notification_service
from .rate_limit import RateLimiter

router = APIRouter()
logger = logging.getLogger(__name__)

# Security settings
ALGORITHM = "HS256"
EMAIL_VERIFICATION_TTL = timedelta(hours=24)
PASSWORD_RESET_TTL = timedelta(minutes=10)
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{0,15}$")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

login_rate_limit = RateLimiter(
    "login", settings.LOGIN_RATE_LIMIT_ATTEMPTS, settings.LOGIN_RATE_LIMIT_WINDOW_SECONDS
)
password_reset_rate_limit = RateLimiter(
    "forgot-password",
    settings.PASSWORD_RESET_RATE_LIMIT_ATTEMPTS,
    settings.PASSWORD_RESET_RATE_LIMIT_WINDOW_SECONDS,
)


# --- Pydantic / SQLModel schemas (not DB tables) ---

class AccountRegistration(SQLModel):
    name: str = Field(min_length=2, max_length=50)
    email: str = Field(max_length=254)
    password: str
    phone: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("Please provide a valid email")
        return value

    @field_validator("phone")
    @classmethod
    def check_phone(cls, value: str) -> str:
        if not PHONE_PATTERN.match(value):
            raise ValueError("Please provide a valid phone number")
        return value


class PatientRegistration(AccountRegistration):
    role: Literal["patient"] = "patient"
    date_of_birth: Optional[date] = None
    gender: Optional[Literal["male", "female", "other"]] = None


class DoctorRegistration(AccountRegistration):
    role: Literal["doctor"]
    specialization: str = Field(min_length=1)
    experience: int = Field(ge=0)
    education: str = Field(min_length=1)
    hospital: str = Field(min_length=1)
    city: str = Field(min_length=1)
    consultation_fee: float = Field(ge=0)
    online_consultation: bool = False
    offline_consultation: bool = True


def registration_role(value) -> str:
    # Accounts register as patients unless they say otherwise
    if isinstance(value, dict):
        return value.get("role", "patient")
    return getattr(value, "role", "patient")


Registration = Annotated[
    Union[
        Annotated[PatientRegistration, Tag("patient")],
        Annotated[DoctorRegistration, Tag("doctor")],
    ],
    Discriminator(registration_role),
]


class UserRead(SQLModel):
    id: int
    name: str
    email: str
    phone: str
    role: str
    is_verified: bool
    is_active: bool
    created_at: datetime


class Token(SQLModel):
    access_token: str
    token_type: str


class AuthResponse(Token):
    user: UserRead


class PasswordChange(SQLModel):
    current_password: str
    new_password: str


class PasswordReset(SQLModel):
    token: str
    password: str


# --- Helper functions ---

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def issue_token_for(user: User) -> Token:
    access_token = create_access_token(data={"sub": str(user.id), "role": user.role})
    return Token(access_token=access_token, token_type="bearer")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def new_one_time_token() -> tuple[str, str]:
    """Return (token for the user, digest to store)."""
    token = secrets.token_hex(20)
    return token, hash_token(token)


def require_strong_password(password: str):
    if not security.meets_password_policy(password):
        raise ValidationFailed(
            "Password must be at least 12 characters with uppercase, lowercase, digit, and special character."
        )


# --- Dependencies ---

def get_current_user(
    token: str = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials.",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
        sub = payload.get("sub")
        if sub is None:
            raise credentials_exception
        user_id = int(sub)
    except (JWTError, ValueError):
        raise credentials_exception

    user = session.get(User, user_id)
    if user is None:
        raise credentials_exception

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is deactivated.",
        )

    now = utcnow()
    if user.last_active:
        inactivity = now - user.last_active
        if inactivity > timedelta(minutes=settings.SESSION_INACTIVITY_MINUTES):
            logger.warning(f"⏱️ Session expired for {user.email} due to inactivity ({inactivity})")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Session expired due to inactivity. Please log in again.",
            )

    user.last_active = now
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def require_role(*roles: str):
    """Dependency factory admitting only the given roles."""
    def checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"User role {current_user.role} is not authorized to access this route",
            )
        return current_user
    return checker


# --- Routes ---

@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(user_in: Registration, session: Session = Depends(get_session)):
    """
    Create a patient or doctor account. Doctor accounts must carry their
    professional profile.
    """
    if security.get_user_by_email(session, user_in.email):
        raise Conflict("A user with this email already exists.")

    require_strong_password(user_in.password)

    data = user_in.model_dump(exclude={"password"})
    verification_token, verification_digest = new_one_time_token()
    user = User(
        **data,
        password_hash=security.get_password_hash(user_in.password),
        email_verification_token=verification_digest,
        email_verification_expire=utcnow() + EMAIL_VERIFICATION_TTL,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"Registered {user.role} account {user.email}")

    try:
        await notification_service.send_welcome_email(user, verification_token)
    except Exception as e:
        logger.warning(f"⚠️ Failed to send welcome email: {e}")

    token = issue_token_for(user)
    return AuthResponse(access_token=token.access_token, token_type=token.token_type, user=UserRead.model_validate(user))


@router.post("/login", response_model=Token, dependencies=[Depends(login_rate_limit)])
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    session: Session = Depends(get_session),
):
    """
    Login with email + password using OAuth2PasswordRequestForm.
    'username' field is treated as email. Failed attempts count towards
    the account lockout.
    """
    user = security.login(session, form_data.username, form_data.password)

    user.last_active = utcnow()
    session.add(user)
    session.commit()
    return issue_token_for(user)


@router.get("/me", response_model=UserRead)
def read_me(current_user: User = Depends(get_current_user)):
    """
    Get the current logged-in user info.
    """
    return current_user


@router.post("/logout")
def logout(current_user: User = Depends(get_current_user), session: Session = Depends(get_session)):
    # Tokens are stateless; dropping last_active makes the next use start a fresh inactivity window
    current_user.last_active = None
    session.add(current_user)
    session.commit()
    return {"message": "Logged out successfully"}


@router.put("/change-password")
def change_password(
    body: PasswordChange,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    if not security.verify_password(body.current_password, current_user.password_hash):
        raise InvalidCredentials("Current password is incorrect.")
    require_strong_password(body.new_password)

    current_user.password_hash = security.get_password_hash(body.new_password)
    current_user.updated_at = utcnow()
    session.add(current_user)
    session.commit()
    return {"message": "Password changed successfully"}


@router.post("/verify-email")
def verify_email(token: str = Body(..., embed=True), session: Session = Depends(get_session)):
    statement = select(User).where(
        User.email_verification_token == hash_token(token),
        User.email_verification_expire > utcnow(),
    )
    user = session.exec(statement).first()
    if user is None:
        raise ValidationFailed("Invalid or expired verification token.")

    user.is_verified = True
    user.email_verification_token = None
    user.email_verification_expire = None
    session.add(user)
    session.commit()
    return {"message": "Email verified successfully"}


@router.post("/forgot-password", dependencies=[Depends(password_reset_rate_limit)])
async def forgot_password(email: str = Body(..., embed=True), session: Session = Depends(get_session)):
    # Same answer whether or not the account exists
    response = {"message": "If the account exists, a password reset email has been sent."}

    user = security.get_user_by_email(session, email)
    if user is None:
        return response

    reset_token, reset_digest = new_one_time_token()
    user.reset_password_token = reset_digest
    user.reset_password_expire = utcnow() + PASSWORD_RESET_TTL
    session.add(user)
    session.commit()

    try:
        await notification_service.send_password_reset_email(user, reset_token)
    except Exception as e:
        logger.warning(f"⚠️ Failed to send password reset email: {e}")
    return response


@router.post("/reset-password")
def reset_password(body: PasswordReset, session: Session = Depends(get_session)):
    statement = select(User).where(
        User.reset_password_token == hash_token(body.token),
        User.reset_password_expire > utcnow(),
    )
    user = session.exec(statement).first()
    if user is None:
        raise ValidationFailed("Invalid or expired reset token.")
    require_strong_password(body.password)

    user.password_hash = security.get_password_hash(body.password)
    user.reset_password_token = None
    user.reset_password_expire = None
    user.updated_at = utcnow()
    session.add(user)
    session.commit()
    return {"message": "Password reset successfully"}

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from tasksync.config import Settings
from tasksync.logging import get_logger, hash_email
from tasksync.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tasksync.service.events import SessionEventBroadcaster
from tasksync.service.otp import OTPPurpose, OTPService
from tasksync.service.passwords import dummy_verify, hash_password, verify_password
from tasksync.service.pending import PendingRegistrationStore
from tasksync.service.tokens import TokenService
from tasksync.storage.cache import KeyValueCache
from tasksync.storage.errors import ConstraintViolation
from tasksync.storage.models import User

logger = get_logger(__name__)

INVALID_CODE = "invalid or expired code"
INVALID_CREDENTIALS = "invalid email or password"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        *,
        email_verified: bool = False,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def update_email(self, user_id: str, email: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    email: str


def email_change_key(user_id: str) -> str:
    return f"pending-email-change:{user_id}"


class AuthService:
    """Account flows built from the pending store, OTPs, tokens and events.

    Methods that issue a code return it so the HTTP layer can hand it to the
    email sender; the code is never part of a response.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: KeyValueCache,
        settings: Settings,
        *,
        pending: PendingRegistrationStore,
        otp: OTPService,
        tokens: TokenService,
        events: SessionEventBroadcaster,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.pending = pending
        self.otp = otp
        self.tokens = tokens
        self.events = events
        self.logger = logger

    # registration

    async def register(self, email: str, password: str, name: str) -> str:
        email = email.strip().lower()
        if self.store.get_user_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        await self.pending.stage(email, password, name)
        code = await self.otp.issue(OTPPurpose.EMAIL_VERIFICATION, email)
        self.logger.info("registration_started", email_hash=hash_email(email))
        return code

    async def resend_verification(self, email: str) -> str:
        email = email.strip().lower()
        if self.store.get_user_by_email(email):
            raise ConflictError("email already verified", detail={"field": "email"})
        if not await self.pending.exists(email):
            raise NotFoundError(
                "registration not found or expired, please register again",
                detail={"field": "email"},
            )
        return await self.otp.issue(OTPPurpose.EMAIL_VERIFICATION, email)

    async def verify_email(self, email: str, code: str) -> Tuple[User, dict]:
        """Consume the verification code and promote the pending sign-up."""

        email = email.strip().lower()
        record = await self.pending.fetch(email)
        if record is None:
            raise NotFoundError(
                "registration not found or expired, please register again",
                detail={"field": "email"},
            )
        if not await self.otp.verify(OTPPurpose.EMAIL_VERIFICATION, email, code):
            raise ValidationError(INVALID_CODE, detail={"field": "otp"})
        try:
            user = self.store.create_user(
                record.email,
                record.name,
                email_verified=True,
                password_hash=record.password_hash,
                password_algo=record.password_algo,
            )
        except ConstraintViolation:
            await self.pending.discard(email)
            raise ConflictError("email already registered", detail={"field": "email"})
        await self.pending.discard(email)
        tokens = await self.tokens.issue_pair(user.id, user.email)
        self.logger.info("registration_completed", user_id=user.id)
        await self.events.notify_email_verified(user.id)
        return user, tokens

    # sessions

    async def login(self, email: str, password: str) -> Tuple[User, dict]:
        email = email.strip().lower()
        user = self.store.get_user_by_email(email)
        if not user:
            record = await self.pending.fetch(email)
            if record and verify_password(record.password_hash, record.password_algo, password):
                raise ForbiddenError(
                    "email not verified", detail={"field": "email"}
                )
            if record is None:
                dummy_verify(password)
            self.logger.info("login_failed", email_hash=hash_email(email))
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not self._check_password(user.id, password):
            self.logger.info("login_failed", email_hash=hash_email(email))
            raise AuthenticationError(INVALID_CREDENTIALS)
        tokens = await self.tokens.issue_pair(user.id, user.email)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, tokens

    async def refresh(self, refresh_token: Optional[str]) -> Tuple[User, dict]:
        if not refresh_token:
            raise AuthenticationError("invalid refresh token")
        try:
            claims = self.tokens.decode_refresh(refresh_token)
        except AuthenticationError:
            raise AuthenticationError("invalid refresh token")
        user = self.store.get_user(claims.user_id)
        if not user:
            raise AuthenticationError("invalid refresh token")
        tokens = await self.tokens.rotate(user.id, refresh_token, email=user.email)
        return user, tokens

    async def logout(self, user_id: str) -> None:
        await self.tokens.revoke(user_id)
        self.logger.info("logout", user_id=user_id)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def authenticate(
        self, authorization: Optional[str], cookie_token: Optional[str] = None
    ) -> AuthContext:
        """Resolve the caller from a bearer header or the access cookie.

        Access tokens are stateless, so this never touches the store or cache.
        """

        token = self._extract_bearer(authorization) or cookie_token
        if not token:
            raise AuthenticationError("access token required")
        claims = self.tokens.verify_access(token)
        return AuthContext(user_id=claims.user_id, email=claims.email)

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    async def whoami(self, user_id: str) -> Tuple[User, dict]:
        user = self.get_user(user_id)
        tokens = await self.tokens.issue_pair(user.id, user.email)
        return user, tokens

    # passwords

    def _check_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            dummy_verify(password)
            return False
        stored_hash, algo = record
        return verify_password(stored_hash, algo, password)

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset code when the account exists.

        Callers must answer identically either way so the response does not
        reveal whether the address is registered.
        """

        email = email.strip().lower()
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            return None
        return await self.otp.issue(OTPPurpose.PASSWORD_RESET, email)

    async def reset_password(self, email: str, code: str, new_password: str) -> User:
        email = email.strip().lower()
        if not await self.otp.verify(OTPPurpose.PASSWORD_RESET, email, code):
            raise ValidationError(INVALID_CODE, detail={"field": "otp"})
        user = self.store.get_user_by_email(email)
        if not user:
            # Account removed after the code was issued
            raise ValidationError(INVALID_CODE, detail={"field": "otp"})
        password_hash, algo = hash_password(new_password)
        self.store.save_password(user.id, password_hash, algo)
        await self.tokens.revoke(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)
        await self.events.notify_password_reset(user.id)
        return user

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Tuple[User, dict]:
        user = self.get_user(user_id)
        if not self._check_password(user.id, current_password):
            raise AuthenticationError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "new_password"},
            )
        password_hash, algo = hash_password(new_password)
        self.store.save_password(user.id, password_hash, algo)
        # New pair replaces the stored refresh token, ending other sessions' renewals
        tokens = await self.tokens.issue_pair(user.id, user.email)
        self.logger.info("password_changed", user_id=user.id)
        await self.events.notify_password_reset(user.id)
        return user, tokens

    # email change

    async def request_email_change(self, user_id: str, new_email: str) -> str:
        new_email = new_email.strip().lower()
        user = self.get_user(user_id)
        if new_email == user.email:
            raise ValidationError(
                "new email must differ from the current email",
                detail={"field": "new_email"},
            )
        if self.store.get_user_by_email(new_email):
            raise ConflictError("email already in use", detail={"field": "new_email"})
        await self.cache.set(email_change_key(user.id), new_email, self.otp.expiry_seconds)
        code = await self.otp.issue(OTPPurpose.EMAIL_CHANGE, new_email)
        self.logger.info(
            "email_change_requested", user_id=user.id, email_hash=hash_email(new_email)
        )
        return code

    async def verify_email_change(
        self, user_id: str, new_email: str, code: str
    ) -> Tuple[User, dict]:
        new_email = new_email.strip().lower()
        user = self.get_user(user_id)
        requested = await self.cache.get(email_change_key(user.id))
        if requested != new_email:
            raise ValidationError(INVALID_CODE, detail={"field": "otp"})
        if not await self.otp.verify(OTPPurpose.EMAIL_CHANGE, new_email, code):
            raise ValidationError(INVALID_CODE, detail={"field": "otp"})
        try:
            updated = self.store.update_email(user.id, new_email)
        except ConstraintViolation:
            raise ConflictError("email already in use", detail={"field": "new_email"})
        finally:
            await self.cache.delete(email_change_key(user.id))
        if not updated:
            raise NotFoundError("user not found")
        tokens = await self.tokens.issue_pair(updated.id, updated.email)
        self.logger.info("email_change_completed", user_id=updated.id)
        await self.events.notify_email_changed(updated.id, updated.email)
        return updated, tokens

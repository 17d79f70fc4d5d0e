"""
auth/lifecycle.py -- Account lifecycle state machine.

    Unregistered --register--> PendingVerification --verify_otp--> Verified

Authentication (Unauthenticated <-> Authenticated) is layered on top of
Verified and re-evaluated on every request by authenticate().

AccountLifecycle is the only component that composes the store, password
hasher, OTP engine, token service and mailer. It raises the domain errors in
auth/errors.py; the HTTP layer maps them to status codes.

Invariants kept here:
  - verified flips False -> True only inside the transaction that consumed a
    matching OTP challenge.
  - Registration never leaves an account the user was not told how to verify:
    if delivery fails, account and challenge are deleted before the error
    leaves this module.
  - The email pre-check is a fast path. The UNIQUE index decides, and its
    violation is reported with the same ConflictError.
  - Unknown email and wrong password are indistinguishable, in both the error
    returned and the time taken [C1].

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from auth.errors import (
    AuthenticationError,
    ConflictError,
    DeliveryError,
    ExpiredError,
    RateLimitError,
    ValidationError,
)
from auth.models import Account, OtpPurpose
from auth.otp import OtpEngine, OtpOutcome
from auth.passwords import _DUMMY_HASH, MAX_PASSWORD_BYTES, hash_password, verify_password
from auth.store import CredentialStore, DuplicateKeyError, normalize_email
from auth.tokens import TokenKind, TokenPair, TokenService

if TYPE_CHECKING:
    from auth.mailer import OtpMailer

logger = logging.getLogger("authgate.lifecycle")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_MAX_EMAIL_LENGTH = 320
_MAX_NAME_LENGTH = 100

VERIFY_REDIRECT = "/verify"

_PURPOSE = OtpPurpose.EMAIL_VERIFICATION


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class RegistrationResult:
    account: Account
    verification_token: str


@dataclass
class LoginResult:
    """Either a verification token (unverified account) or a session pair (verified)."""

    account: Account
    verification_required: bool
    verification_token: str | None = None
    tokens: TokenPair | None = None
    redirect_to: str | None = None


@dataclass
class VerificationResult:
    account: Account
    tokens: TokenPair


@dataclass
class Authentication:
    """An authenticated request. rotated is set when a refresh happened and must reach the client."""

    account: Account
    rotated: TokenPair | None = None


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class AccountLifecycle:
    def __init__(
        self,
        store: CredentialStore,
        otp: OtpEngine,
        tokens: TokenService,
        mailer: OtpMailer,
        password_min_length: int = 8,
    ) -> None:
        self.store = store
        self.otp = otp
        self.tokens = tokens
        self.mailer = mailer
        self.password_min_length = password_min_length

    @property
    def _otp_expiry_minutes(self) -> int:
        return max(1, self.otp.ttl_seconds // 60)

    # ------------------------------------------------------------------
    # Register: Unregistered -> PendingVerification
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: str) -> RegistrationResult:
        """Create an unverified account, issue its OTP and deliver it.

        Raises ValidationError, ConflictError or DeliveryError. If the send
        raises anything, the account and challenge are removed before the
        error propagates.
        """
        email, name = self._validate_registration(email, password, name)

        if self.store.find_by_email(email) is not None:
            raise ConflictError()

        password_hash = hash_password(password)

        try:
            with self.store.transaction() as tx:
                account = tx.create_account(Account(email=email, name=name, password_hash=password_hash))
                code = self.otp.using(tx).issue(account.id, _PURPOSE)
        except DuplicateKeyError as exc:
            # Lost the race against a concurrent registration for the same email.
            raise ConflictError() from exc

        verification_token = self.tokens.issue(TokenKind.VERIFICATION, account.id, account.email)

        try:
            self.mailer.send_otp(account.email, code, expiry_minutes=self._otp_expiry_minutes)
        except Exception:
            # Any failure here means the user never saw the code.
            with self.store.transaction() as tx:
                tx.delete_all_challenges(account.id)
                tx.delete_account(account.id)
            logger.warning("Registration rolled back for account %s: OTP delivery failed", account.id)
            raise

        logger.info("Registered account %s (pending verification)", account.id)
        return RegistrationResult(account=account, verification_token=verification_token)

    def _validate_registration(self, email, password, name) -> tuple[str, str]:
        if not email or not password or not name:
            raise ValidationError("All fields are required.", code="missing_fields")
        if not all(isinstance(v, str) for v in (email, password, name)):
            raise ValidationError("Credentials must be strings.")

        email = normalize_email(email)
        name = name.strip()
        if len(email) > _MAX_EMAIL_LENGTH or not _EMAIL_RE.match(email):
            raise ValidationError("Invalid email address.", code="invalid_email")
        if len(password) < self.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.password_min_length} characters.",
                code="weak_password",
            )
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.", code="password_too_long")
        if not name or len(name) > _MAX_NAME_LENGTH:
            raise ValidationError("Name is required.", code="invalid_name")
        return email, name

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def authenticate_credentials(self, email: str, password: str) -> Account:
        """Check email + password with timing equalization [C1].

        Always runs bcrypt whether or not the account exists:
        - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as a real check)
        - Wrong password: bcrypt runs against the real hash
        Both raise the same AuthenticationError.
        """
        if not isinstance(email, str) or not isinstance(password, str) or not email or not password:
            raise ValidationError("Missing email or password.", code="missing_fields")
        account = self.store.find_by_email(email)
        if account is None:
            verify_password(password, _DUMMY_HASH)
            raise AuthenticationError()
        if not verify_password(password, account.password_hash):
            raise AuthenticationError()
        return account

    def login(self, email: str, password: str) -> LoginResult:
        """Authenticate credentials, then either continue verification or start a session."""
        account = self.authenticate_credentials(email, password)

        if not account.verified:
            if self.otp.has_live_challenge(account.id, _PURPOSE):
                logger.info("Login for unverified account %s: live OTP exists, not re-sending", account.id)
            else:
                code = self.otp.issue(account.id, _PURPOSE)
                try:
                    self.mailer.send_otp(account.email, code, expiry_minutes=self._otp_expiry_minutes)
                except DeliveryError:
                    # Drop the undelivered code so a resend from /verify is not blocked by it.
                    self.store.delete_all_challenges(account.id, _PURPOSE)
                    logger.warning("Login for unverified account %s: OTP delivery failed", account.id)
                except Exception:
                    self.store.delete_all_challenges(account.id, _PURPOSE)
                    raise
            return LoginResult(
                account=account,
                verification_required=True,
                verification_token=self.tokens.issue(TokenKind.VERIFICATION, account.id, account.email),
                redirect_to=VERIFY_REDIRECT,
            )

        logger.info("Login succeeded for account %s", account.id)
        return LoginResult(
            account=account,
            verification_required=False,
            tokens=self.tokens.issue_pair(account.id, account.email),
        )

    # ------------------------------------------------------------------
    # VerifyOtp: PendingVerification -> Verified -> Authenticated
    # ------------------------------------------------------------------

    def resolve_verification_account(self, verification_token: str | None, email: str | None) -> Account:
        """Find the account a verification attempt targets.

        The token path is preferred. When both a token and an email are given
        they must name the same account.
        """
        if verification_token:
            claims = self.tokens.verify(TokenKind.VERIFICATION, verification_token)
            if claims is None:
                raise AuthenticationError("Invalid or expired verification token.", code="invalid_token")
            account = self.store.find_by_id(claims.subject)
            if account is None:
                raise AuthenticationError("Invalid or expired verification token.", code="invalid_token")
            if email and normalize_email(email) != account.email:
                raise AuthenticationError("Invalid or expired verification token.", code="invalid_token")
            return account

        if email and isinstance(email, str):
            account = self.store.find_by_email(email)
            if account is None:
                raise AuthenticationError("Incorrect verification code.", code="incorrect_otp")
            return account

        raise ValidationError("No verification token or email provided.", code="missing_target")

    def verify_otp(
        self,
        code: str,
        verification_token: str | None = None,
        email: str | None = None,
    ) -> VerificationResult:
        """Consume an OTP and, on success, mark the account verified and start a session."""
        if not isinstance(code, str) or not re.fullmatch(rf"\d{{{self.otp.length}}}", code.strip()):
            raise ValidationError(
                f"OTP is required and must be a {self.otp.length}-digit string.",
                code="invalid_otp_format",
            )
        code = code.strip()

        account = self.resolve_verification_account(verification_token, email)
        if account.verified:
            raise ValidationError("Account is already verified.", code="already_verified")

        with self.store.transaction() as tx:
            outcome = self.otp.using(tx).verify(account.id, _PURPOSE, code)
            if outcome is OtpOutcome.SUCCESS:
                tx.mark_verified(account.id)
                tx.delete_all_challenges(account.id, _PURPOSE)
                account = tx.find_by_id(account.id)

        if outcome is OtpOutcome.SUCCESS:
            logger.info("Account %s verified", account.id)
            return VerificationResult(account=account, tokens=self.tokens.issue_pair(account.id, account.email))
        if outcome is OtpOutcome.EXPIRED:
            raise ExpiredError()
        if outcome is OtpOutcome.TOO_MANY_ATTEMPTS:
            logger.warning("OTP locked out for account %s: too many attempts", account.id)
            raise RateLimitError()
        if outcome is OtpOutcome.INVALID:
            raise AuthenticationError("Incorrect verification code.", code="incorrect_otp")
        raise ValidationError("No verification code issued for this account.", code="otp_not_set")

    def resend_otp(self, verification_token: str | None) -> bool:
        """Issue and send a new code if no live one exists. Returns True if an email was sent."""
        claims = self.tokens.verify(TokenKind.VERIFICATION, verification_token)
        account = self.store.find_by_id(claims.subject) if claims else None
        if account is None:
            raise AuthenticationError("Invalid or expired verification token.", code="invalid_token")
        if account.verified:
            raise ValidationError("Account is already verified.", code="already_verified")
        if self.otp.has_live_challenge(account.id, _PURPOSE):
            return False
        code = self.otp.issue(account.id, _PURPOSE)
        try:
            self.mailer.send_otp(account.email, code, expiry_minutes=self._otp_expiry_minutes)
        except Exception:
            self.store.delete_all_challenges(account.id, _PURPOSE)
            logger.warning("Resend for account %s: OTP delivery failed", account.id)
            raise
        logger.info("Re-sent OTP for account %s", account.id)
        return True

    def verification_info(self, verification_token: str | None) -> str:
        """Return the email carried by a valid verification token."""
        claims = self.tokens.verify(TokenKind.VERIFICATION, verification_token)
        if claims is None or not claims.email:
            raise AuthenticationError("Invalid or expired verification token.", code="invalid_token")
        return claims.email

    # ------------------------------------------------------------------
    # AuthenticateRequest
    # ------------------------------------------------------------------

    def authenticate(self, access_token: str | None = None, refresh_token: str | None = None) -> Authentication | None:
        """Resolve the request's account from its tokens, rotating via refresh if needed.

        Returns None when the request is unauthenticated. Never raises for bad
        tokens -- every failure is simply "not authenticated".
        """
        claims = self.tokens.verify(TokenKind.ACCESS, access_token)
        if claims is not None:
            account = self.store.find_by_id(claims.subject)
            if account is not None and account.verified:
                return Authentication(account=account)

        if refresh_token:
            rotated = self.tokens.rotate(refresh_token)
            if rotated is not None:
                account = self.store.find_by_id(rotated.account_id)
                if account is not None and account.verified:
                    return Authentication(
                        account=account,
                        rotated=TokenPair(access_token=rotated.access_token, refresh_token=rotated.refresh_token),
                    )
        return None

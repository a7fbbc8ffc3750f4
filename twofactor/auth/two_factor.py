"""Second-factor checks around principal updates.

:class:`TwoFactorAuthenticator` owns the OTP rules for one principal type: it
decrypts the stored secret, verifies submitted codes, consumes accepted time
steps and refuses attribute changes that are not backed by a valid code.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional, Type

from pydantic import BaseModel, ValidationError

from twofactor.config import OtpSettings
from twofactor.crypto.crypto_utils import AesGcmCipher, SecretCipher
from twofactor.models.principal import ALREADY_CONSUMED, BLANK, INVALID, Principal
from twofactor.otp import otp_utils, totp_engine
from twofactor.otp.replay_guard import ReplayGuard
from twofactor.otp.totp_engine import TimeLike
from twofactor.storage.principal_store import PrincipalStore

logger = logging.getLogger(__name__)

PasswordVerifier = Callable[[Principal, str], bool]
PasswordHasher = Callable[[str], str]

PASSWORD_FIELDS = ("password", "password_confirmation")
PASSWORD_HASH_FIELD = "password_hash"


class EnrollmentError(RuntimeError):
    """Raised when a freshly generated secret could not be persisted."""


class TwoFactorAuthenticator:
    def __init__(
        self,
        settings: OtpSettings,
        store: PrincipalStore,
        cipher: Optional[SecretCipher] = None,
        password_verifier: Optional[PasswordVerifier] = None,
        password_hasher: Optional[PasswordHasher] = None,
        schema: Optional[Type[BaseModel]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cipher = cipher if cipher is not None else AesGcmCipher()
        self.password_verifier = password_verifier
        self.password_hasher = password_hasher
        self.schema = schema
        self.clock = clock
        self.replay_guard = ReplayGuard(store, settings.interval)

    # Secret lifecycle

    def generate_otp_secret(self, length: Optional[int] = None) -> str:
        return otp_utils.generate_otp_secret(length or self.settings.otp_secret_length)

    def otp_secret(self, principal: Principal) -> Optional[str]:
        """Decrypt the principal's secret; None when none is stored."""

        if not principal.has_otp_secret:
            return None
        return self.cipher.decrypt(
            principal.encrypted_otp_secret,
            principal.encrypted_otp_secret_iv,
            principal.encrypted_otp_secret_salt,
            self.settings.otp_secret_encryption_key,
        )

    def assign_otp_secret(self, principal: Principal, secret: str) -> None:
        encrypted = self.cipher.encrypt(secret, self.settings.otp_secret_encryption_key)
        principal.encrypted_otp_secret = encrypted.ciphertext
        principal.encrypted_otp_secret_iv = encrypted.iv
        principal.encrypted_otp_secret_salt = encrypted.salt

    def enroll(self, principal: Principal, account_name: str) -> otp_utils.OtpEnrollment:
        """Give ``principal`` a new secret, persist it and describe the enrollment."""

        secret = self.generate_otp_secret()
        self.assign_otp_secret(principal, secret)
        if not self.store.save(principal):
            raise EnrollmentError(f"Could not persist OTP secret for principal id={principal.id}.")
        logger.info("Enrolled principal id=%s for OTP", principal.id)
        return otp_utils.OtpEnrollment(
            secret=secret,
            account_name=account_name,
            issuer=self.settings.issuer,
            digits=self.settings.digits,
            interval=self.settings.interval,
            algorithm=self.settings.algorithm,
            provisioning_uri=self.otp_provisioning_uri(principal, account_name, otp_secret=secret),
        )

    def otp_provisioning_uri(self, principal: Principal, account_name: str, **options: Any) -> str:
        """Build the enrollment URI; ``options`` may override ``otp_secret``,
        ``issuer``, ``digits``, ``period`` and ``algorithm``."""

        secret = options.get("otp_secret") or self.otp_secret(principal)
        return otp_utils.build_provisioning_uri(
            secret,
            account_name,
            issuer=options.get("issuer", self.settings.issuer),
            digits=options.get("digits", self.settings.digits),
            period=options.get("period", self.settings.interval),
            algorithm=options.get("algorithm", self.settings.algorithm),
        )

    # Verification

    def current_otp_timestep(self, at: TimeLike = None) -> int:
        return totp_engine.current_timestep(self._at(at), self.settings.interval)

    def current_otp(self, principal: Principal, at: TimeLike = None) -> str:
        secret = self.otp_secret(principal)
        if not secret:
            raise ValueError(f"Principal id={principal.id} has no OTP secret.")
        return totp_engine.current_code(
            secret,
            self._at(at),
            interval=self.settings.interval,
            digits=self.settings.digits,
            algorithm=self.settings.algorithm,
        )

    def already_consumed(self, principal: Principal, at: TimeLike = None) -> bool:
        return self.replay_guard.already_consumed(principal, self._at(at))

    def valid_otp(self, principal: Principal, code: Optional[str], at: TimeLike = None) -> bool:
        at = self._at(at)
        if self.already_consumed(principal, at):
            return False
        return self._verify(self.otp_secret(principal), code, at)

    def validate_and_consume_otp(
        self,
        principal: Principal,
        code: Optional[str],
        otp_secret: Optional[str] = None,
        at: TimeLike = None,
    ) -> bool:
        """Verify ``code`` and consume the current step.

        ``otp_secret`` lets a caller confirm a secret that has not been stored yet.
        """

        at = self._at(at)
        secret = otp_secret or self.otp_secret(principal)
        if not code or not secret:
            return False
        if self._verify(secret, code, at):
            return self.replay_guard.try_consume(principal, at)
        return False

    # Attribute updates

    def validate(self, principal: Principal) -> bool:
        principal.errors.clear()
        if self.schema is None:
            return True
        try:
            self.schema.model_validate(principal.attributes)
        except ValidationError as exc:
            for error in exc.errors():
                loc = error.get("loc") or ("base",)
                principal.errors.add(str(loc[0]), error["type"])
            return False
        return True

    def update(self, principal: Principal, changes: Mapping[str, Any]) -> bool:
        """Validate and persist ``changes``.

        A new ``password`` is never stored as given: only the output of the
        password hasher is kept, under ``password_hash``.
        """

        changes = dict(changes)
        password = changes.pop("password", None)
        confirmation = changes.pop("password_confirmation", None)
        principal.assign_attributes(changes)
        valid = self.validate(principal)
        if password and confirmation is not None and confirmation != password:
            principal.errors.add("password_confirmation", "confirmation")
            valid = False
        if not valid:
            return False
        if password:
            principal.attributes[PASSWORD_HASH_FIELD] = self._hash_password(password)
        return self.store.save(principal)

    def update_with_password(self, principal: Principal, params: Mapping[str, Any]) -> bool:
        """Apply ``params`` only when ``current_password`` is correct.

        A blank ``password`` is treated as "unchanged" and dropped together with
        ``password_confirmation``.
        """

        params = dict(params)
        current_password = params.pop("current_password", None)
        if not params.get("password"):
            params.pop("password", None)
            params.pop("password_confirmation", None)

        if current_password and self._password_matches(principal, current_password):
            return self.update(principal, params)

        principal.assign_attributes(_without_passwords(params))
        self.validate(principal)
        principal.errors.add("current_password", INVALID if current_password else BLANK)
        return False

    def update_with_otp(self, principal: Principal, params: Mapping[str, Any]) -> bool:
        return self._update_with_otp(principal, params, self.update, password_gated=False)

    def update_with_otp_and_password(self, principal: Principal, params: Mapping[str, Any]) -> bool:
        return self._update_with_otp(principal, params, self.update_with_password, password_gated=True)

    def clean_up_passwords(self, principal: Principal) -> None:
        principal.otp_attempt = None

    def _update_with_otp(
        self,
        principal: Principal,
        params: Mapping[str, Any],
        apply: Callable[[Principal, Dict[str, Any]], bool],
        password_gated: bool,
    ) -> bool:
        params = dict(params)
        attempt = params.pop("otp_attempt", None)
        code = "" if attempt is None else str(attempt)
        principal.otp_attempt = code
        now = self.clock()
        try:
            if not principal.otp_required_for_login:
                return apply(principal, params)

            if self.valid_otp(principal, code, at=now):
                if not apply(principal, params):
                    return False
                if self.validate_and_consume_otp(principal, code, at=now):
                    return True
                reason = ALREADY_CONSUMED if self.already_consumed(principal, now) else INVALID
                principal.errors.add("otp_attempt", reason)
                logger.info("Update for principal id=%s saved but code not consumed: %s", principal.id, reason)
                return False

            if password_gated:
                params.pop("current_password", None)
            principal.assign_attributes(_without_passwords(params))
            self.validate(principal)
            reason = self._otp_error(principal, code, now)
            principal.errors.add("otp_attempt", reason)
            logger.info("Refused update for principal id=%s: otp_attempt %s", principal.id, reason)
            return False
        finally:
            self.clean_up_passwords(principal)

    def _otp_error(self, principal: Principal, code: str, at: TimeLike) -> str:
        if self.already_consumed(principal, at):
            return ALREADY_CONSUMED
        if not code.strip():
            return BLANK
        return INVALID

    def _hash_password(self, password: str) -> str:
        if self.password_hasher is None:
            raise ValueError("A password hasher is required to change a password.")
        return self.password_hasher(password)

    def _password_matches(self, principal: Principal, password: str) -> bool:
        if self.password_verifier is None:
            raise ValueError("A password verifier is required for password-gated updates.")
        return bool(self.password_verifier(principal, password))

    def _verify(self, secret: Optional[str], code: Optional[str], at: TimeLike) -> bool:
        return totp_engine.verify(
            secret,
            code,
            self.settings.otp_allowed_drift,
            at,
            interval=self.settings.interval,
            digits=self.settings.digits,
            algorithm=self.settings.algorithm,
        )

    def _at(self, at: TimeLike) -> TimeLike:
        return self.clock() if at is None else at


def _without_passwords(params: Mapping[str, Any]) -> Dict[str, Any]:
    return {name: value for name, value in params.items() if name not in PASSWORD_FIELDS}

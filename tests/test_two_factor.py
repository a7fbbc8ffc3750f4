import hashlib

import pyotp
import pytest
from pydantic import BaseModel, Field
from sqlalchemy import create_engine

from twofactor.auth.two_factor import TwoFactorAuthenticator
from twofactor.config import OtpSettings
from twofactor.crypto.crypto_utils import AesGcmCipher, OtpConfigurationError
from twofactor.models.principal import Principal
from twofactor.otp import totp_engine
from twofactor.storage.principal_store import InMemoryPrincipalStore, SqlAlchemyPrincipalStore

SECRET = "JBSWY3DPEHPK3PXP"
T = 1_700_000_010
STEP = T // 30
PASSWORD = "correct horse"


class Profile(BaseModel):
    name: str = Field(min_length=1)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def _code(at=T):
    return totp_engine.current_code(SECRET, at)


def _hash(password):
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


@pytest.fixture
def settings():
    return OtpSettings(_env_file=None, otp_secret_encryption_key="test-encryption-key", issuer="Acme")


@pytest.fixture
def clock():
    return Clock(T)


@pytest.fixture
def store():
    return InMemoryPrincipalStore()


@pytest.fixture
def auth(settings, store, clock):
    return TwoFactorAuthenticator(
        settings,
        store,
        cipher=AesGcmCipher(iterations=1_000),
        password_verifier=lambda principal, password: password == PASSWORD,
        password_hasher=_hash,
        schema=Profile,
        clock=clock,
    )


@pytest.fixture
def principal(auth, store):
    record = Principal(id=1, attributes={"name": "alice"}, otp_required_for_login=True)
    auth.assign_otp_secret(record, SECRET)
    store.add(record)
    return store.get(1)


def test_update_with_valid_code_applies_changes_and_consumes(auth, store, principal):
    assert auth.update_with_otp(principal, {"name": "bob", "otp_attempt": _code()})

    saved = store.get(1)
    assert saved.attributes["name"] == "bob"
    assert saved.consumed_timestep == STEP
    assert "otp_attempt" not in saved.attributes
    assert principal.otp_attempt is None
    assert not principal.errors


def test_replayed_code_reports_already_consumed(auth, store, principal):
    code = _code()
    assert auth.update_with_otp(principal, {"name": "bob", "otp_attempt": code})

    assert not auth.update_with_otp(principal, {"name": "carol", "otp_attempt": code})
    assert principal.errors.get("otp_attempt") == ["already_consumed"]
    assert principal.attributes["name"] == "carol"
    assert store.get(1).attributes["name"] == "bob"


def test_replay_is_rejected_for_any_code_in_consumed_step(auth, store):
    principal = Principal(id=2, otp_required_for_login=True, consumed_timestep=STEP)
    auth.assign_otp_secret(principal, SECRET)
    store.add(principal)

    assert not auth.validate_and_consume_otp(principal, _code())
    assert not auth.valid_otp(principal, _code())
    assert store.get(2).consumed_timestep == STEP


def test_blank_code_reports_blank(auth, store, principal):
    assert not auth.update_with_otp(principal, {"name": "bob", "otp_attempt": ""})
    assert principal.errors.get("otp_attempt") == ["blank"]
    assert store.get(1).attributes["name"] == "alice"


def test_missing_code_reports_blank(auth, principal):
    assert not auth.update_with_otp(principal, {"name": "bob"})
    assert principal.errors.get("otp_attempt") == ["blank"]


@pytest.mark.parametrize("attempt", ["000000", "12345", "1234567", "abcdef"])
def test_wrong_code_reports_invalid(auth, store, principal, attempt):
    if attempt == _code():
        pytest.skip("attempt collides with the real code")
    assert not auth.update_with_otp(principal, {"name": "bob", "otp_attempt": attempt})
    assert principal.errors.get("otp_attempt") == ["invalid"]
    assert principal.otp_attempt is None
    assert store.get(1).consumed_timestep is None


def test_failed_code_still_runs_attribute_validation(auth, principal):
    assert not auth.update_with_otp(principal, {"name": "", "otp_attempt": "000001"})
    assert principal.errors.get("name") == ["string_too_short"]
    assert principal.errors.get("otp_attempt") == ["invalid"]


def test_invalid_attributes_with_valid_code_do_not_consume(auth, store, principal):
    assert not auth.update_with_otp(principal, {"name": "", "otp_attempt": _code()})
    assert "name" in principal.errors
    assert store.get(1).consumed_timestep is None


def test_code_from_adjacent_step_is_accepted(auth, store, principal, clock):
    clock.now = T + 30
    assert auth.update_with_otp(principal, {"name": "bob", "otp_attempt": _code(T)})
    assert store.get(1).consumed_timestep == STEP + 1


def test_code_outside_drift_is_invalid(auth, principal, clock):
    clock.now = T + 60
    assert not auth.update_with_otp(principal, {"name": "bob", "otp_attempt": _code(T)})
    assert principal.errors.get("otp_attempt") == ["invalid"]


def test_replay_check_compares_against_current_step_only(auth, store, principal, clock):
    # A code from the next step is accepted now and recorded against the
    # current step, so it verifies again once the clock reaches its own step.
    future_code = _code(T + 30)
    assert auth.update_with_otp(principal, {"name": "bob", "otp_attempt": future_code})
    assert store.get(1).consumed_timestep == STEP

    clock.now = T + 30
    assert auth.update_with_otp(principal, {"name": "carol", "otp_attempt": future_code})
    assert store.get(1).consumed_timestep == STEP + 1


def test_update_without_otp_requirement_needs_no_code(auth, store):
    principal = Principal(id=3, attributes={"name": "dave"})
    store.add(principal)
    assert auth.update_with_otp(principal, {"name": "x"})
    assert store.get(3).attributes["name"] == "x"
    assert store.get(3).consumed_timestep is None


def test_missing_secret_fails_closed(auth, store):
    principal = Principal(id=4, attributes={"name": "erin"}, otp_required_for_login=True)
    store.add(principal)
    assert not auth.update_with_otp(principal, {"name": "bob", "otp_attempt": "123456"})
    assert principal.errors.get("otp_attempt") == ["invalid"]


def test_missing_encryption_key_is_not_tolerated(store, principal, clock):
    unkeyed = TwoFactorAuthenticator(
        OtpSettings(_env_file=None), store, cipher=AesGcmCipher(iterations=1_000), clock=clock
    )
    with pytest.raises(OtpConfigurationError):
        unkeyed.update_with_otp(principal, {"name": "bob", "otp_attempt": _code()})
    assert principal.otp_attempt is None
    assert store.get(1).consumed_timestep is None


def test_password_gated_update_succeeds_with_password_and_code(auth, store, principal):
    params = {"name": "bob", "current_password": PASSWORD, "otp_attempt": _code()}
    assert auth.update_with_otp_and_password(principal, params)
    saved = store.get(1)
    assert saved.attributes == {"name": "bob"}
    assert saved.consumed_timestep == STEP


def test_password_gated_update_with_wrong_password_does_not_consume(auth, store, principal):
    params = {"name": "bob", "current_password": "wrong", "otp_attempt": _code()}
    assert not auth.update_with_otp_and_password(principal, params)
    assert principal.errors.get("current_password") == ["invalid"]
    assert principal.consumed_timestep is None
    assert store.get(1).consumed_timestep is None
    assert store.get(1).attributes["name"] == "alice"


def test_password_gated_update_with_blank_password(auth, principal):
    params = {"name": "bob", "otp_attempt": _code()}
    assert not auth.update_with_otp_and_password(principal, params)
    assert principal.errors.get("current_password") == ["blank"]


def test_password_gated_invalid_code_drops_current_password(auth, principal):
    params = {"name": "bob", "current_password": PASSWORD, "otp_attempt": "000001"}
    assert not auth.update_with_otp_and_password(principal, params)
    assert "current_password" not in principal.attributes
    assert principal.errors.get("otp_attempt") == ["invalid"]


def test_password_gated_update_without_otp_requirement(auth, store):
    principal = Principal(id=5, attributes={"name": "frank"})
    store.add(principal)
    assert auth.update_with_otp_and_password(principal, {"name": "x", "current_password": PASSWORD})
    assert store.get(5).attributes["name"] == "x"


def test_update_with_password_drops_blank_new_password(auth, store, principal):
    params = {"name": "bob", "password": "", "password_confirmation": "", "current_password": PASSWORD}
    assert auth.update_with_password(principal, params)
    assert "password" not in store.get(1).attributes
    assert "password_confirmation" not in store.get(1).attributes


class _FailingConsumeStore(InMemoryPrincipalStore):
    def consume_timestep(self, principal_id, timestep):
        return False


def test_failed_consumption_fails_the_update(settings, clock):
    store = _FailingConsumeStore()
    auth = TwoFactorAuthenticator(settings, store, cipher=AesGcmCipher(iterations=1_000), clock=clock)
    principal = Principal(id=1, attributes={"name": "alice"}, otp_required_for_login=True)
    auth.assign_otp_secret(principal, SECRET)
    store.add(principal)

    assert not auth.update_with_otp(principal, {"name": "bob", "otp_attempt": _code()})
    # the attribute write happened before consumption was attempted
    assert store.get(1).attributes["name"] == "bob"
    assert principal.errors.get("otp_attempt") == ["invalid"]


class _ExplodingStore(InMemoryPrincipalStore):
    def save(self, principal):
        raise RuntimeError("storage unavailable")


def test_otp_attempt_is_cleared_when_storage_fails(settings, clock):
    store = _ExplodingStore()
    auth = TwoFactorAuthenticator(settings, store, cipher=AesGcmCipher(iterations=1_000), clock=clock)
    principal = Principal(id=1, attributes={"name": "alice"}, otp_required_for_login=True)
    auth.assign_otp_secret(principal, SECRET)
    store.add(principal)

    with pytest.raises(RuntimeError):
        auth.update_with_otp(principal, {"name": "bob", "otp_attempt": _code()})
    assert principal.otp_attempt is None


def test_validate_and_consume_with_unsaved_secret(auth, store):
    principal = Principal(id=6)
    store.add(principal)
    new_secret = pyotp.random_base32()
    code = totp_engine.current_code(new_secret, T)

    assert not auth.validate_and_consume_otp(principal, code)
    assert auth.validate_and_consume_otp(principal, code, otp_secret=new_secret)
    assert store.get(6).consumed_timestep == STEP


def test_validate_and_consume_rejects_blank_code(auth, principal):
    assert not auth.validate_and_consume_otp(principal, "")
    assert not auth.validate_and_consume_otp(principal, None)


def test_current_otp_and_timestep(auth, principal):
    assert auth.current_otp_timestep() == STEP
    assert auth.current_otp(principal) == _code()


def test_current_otp_without_secret_raises(auth):
    with pytest.raises(ValueError):
        auth.current_otp(Principal(id=9))


def test_enroll_persists_encrypted_secret(auth, store):
    principal = Principal(id=7, attributes={"name": "gina"})
    store.add(principal)

    enrollment = auth.enroll(principal, "gina@example.com")

    saved = store.get(7)
    assert len(enrollment.secret) == 32
    assert saved.encrypted_otp_secret and saved.encrypted_otp_secret_iv and saved.encrypted_otp_secret_salt
    assert enrollment.secret.encode() not in saved.encrypted_otp_secret
    assert auth.otp_secret(saved) == enrollment.secret
    assert enrollment.provisioning_uri.startswith("otpauth://totp/gina@example.com?secret=")


def test_provisioning_uri_uses_settings_and_options(auth, principal):
    uri = auth.otp_provisioning_uri(principal, "alice@example.com")
    assert uri == (
        "otpauth://totp/alice@example.com"
        f"?secret={SECRET}&issuer=Acme&algorithm=SHA1&digits=6&period=30"
    )

    parsed = pyotp.parse_uri(auth.otp_provisioning_uri(principal, "alice", issuer="Other", digits=8, period=60))
    assert parsed.secret == SECRET
    assert parsed.issuer == "Other"
    assert parsed.digits == 8
    assert parsed.interval == 60


def test_clean_up_passwords_clears_attempt(auth, principal):
    principal.otp_attempt = "123456"
    auth.clean_up_passwords(principal)
    assert principal.otp_attempt is None


def _stored_values(principal):
    return [str(value) for value in principal.attributes.values()]


def test_new_password_is_stored_hashed_only(auth, store, principal):
    params = {"password": "n3w-secret", "password_confirmation": "n3w-secret", "current_password": PASSWORD}
    assert auth.update_with_password(principal, params)

    saved = store.get(1)
    assert saved.attributes["password_hash"] == _hash("n3w-secret")
    assert "password" not in saved.attributes
    assert "password_confirmation" not in saved.attributes
    assert "n3w-secret" not in _stored_values(saved)
    assert "n3w-secret" not in _stored_values(principal)


def test_new_password_is_hashed_in_sql_store(settings, clock, tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'principals.db'}")
    store = SqlAlchemyPrincipalStore(engine)
    store.create_schema()
    auth = TwoFactorAuthenticator(
        settings,
        store,
        cipher=AesGcmCipher(iterations=1_000),
        password_verifier=lambda principal, password: password == PASSWORD,
        password_hasher=_hash,
        clock=clock,
    )
    principal = Principal(id=1, attributes={"name": "alice"}, otp_required_for_login=True)
    auth.assign_otp_secret(principal, SECRET)
    store.add(principal)

    params = {"password": "n3w-secret", "current_password": PASSWORD, "otp_attempt": _code()}
    assert auth.update_with_otp_and_password(principal, params)

    saved = store.get(1)
    assert saved.attributes == {"name": "alice", "password_hash": _hash("n3w-secret")}
    assert saved.consumed_timestep == STEP


def test_password_mismatch_is_rejected(auth, store, principal):
    params = {"password": "n3w-secret", "password_confirmation": "other", "current_password": PASSWORD}
    assert not auth.update_with_password(principal, params)
    assert principal.errors.get("password_confirmation") == ["confirmation"]
    assert "password_hash" not in store.get(1).attributes


def test_refused_updates_do_not_keep_raw_password(auth, principal):
    wrong_password = {"password": "n3w-secret", "password_confirmation": "n3w-secret", "current_password": "bad"}
    assert not auth.update_with_password(principal, wrong_password)
    assert "n3w-secret" not in _stored_values(principal)

    wrong_code = {"password": "n3w-secret", "current_password": PASSWORD, "otp_attempt": "000001"}
    assert not auth.update_with_otp_and_password(principal, wrong_code)
    assert "n3w-secret" not in _stored_values(principal)

    assert not auth.update_with_otp(principal, {"password": "n3w-secret", "otp_attempt": "000001"})
    assert "n3w-secret" not in _stored_values(principal)


def test_password_change_without_hasher_raises(settings, store, principal, clock):
    auth = TwoFactorAuthenticator(settings, store, cipher=AesGcmCipher(iterations=1_000), clock=clock)
    with pytest.raises(ValueError):
        auth.update(principal, {"password": "n3w-secret"})
    assert "password" not in store.get(1).attributes


class _RacingStore(InMemoryPrincipalStore):
    """Another request consumes the step just before this one writes."""

    def consume_timestep(self, principal_id, timestep):
        super().consume_timestep(principal_id, timestep)
        return super().consume_timestep(principal_id, timestep)


def test_losing_consumption_race_reports_already_consumed(settings, clock):
    store = _RacingStore()
    auth = TwoFactorAuthenticator(settings, store, cipher=AesGcmCipher(iterations=1_000), clock=clock)
    principal = Principal(id=1, attributes={"name": "alice"}, otp_required_for_login=True)
    auth.assign_otp_secret(principal, SECRET)
    store.add(principal)

    assert not auth.update_with_otp(principal, {"name": "bob", "otp_attempt": _code()})
    assert principal.errors.get("otp_attempt") == ["already_consumed"]
    assert principal.otp_attempt is None
    assert store.get(1).consumed_timestep == STEP

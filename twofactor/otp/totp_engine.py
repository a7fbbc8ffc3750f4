"""Time-stepped code generation and verification on top of pyotp.

Time values may be unix timestamps, ``datetime`` objects (naive values are read
as UTC) or ``None`` for the current time.
"""

from __future__ import annotations

import calendar
import hashlib
import time
from datetime import datetime
from typing import Union

import pyotp
from pyotp.utils import strings_equal

TimeLike = Union[float, int, datetime, None]

DEFAULT_INTERVAL: int = 30
DEFAULT_DIGITS: int = 6
DEFAULT_ALGORITHM: str = "SHA1"

DIGESTS = {
    "SHA1": hashlib.sha1,
    "SHA256": hashlib.sha256,
    "SHA512": hashlib.sha512,
}


def _timestamp(at: TimeLike) -> int:
    if at is None:
        return int(time.time())
    if isinstance(at, datetime):
        if at.tzinfo is None:
            return calendar.timegm(at.timetuple())
        return calendar.timegm(at.utctimetuple())
    return int(at)


def _totp(secret: str, interval: int, digits: int, algorithm: str) -> pyotp.TOTP:
    digest = DIGESTS.get(algorithm.upper())
    if digest is None:
        raise ValueError(f"Unsupported OTP algorithm: {algorithm}")
    return pyotp.TOTP(secret, digits=digits, digest=digest, interval=interval)


def current_timestep(at: TimeLike = None, interval: int = DEFAULT_INTERVAL) -> int:
    """Return ``floor(unix_time / interval)`` for ``at``."""

    return _timestamp(at) // interval


def current_code(
    secret: str,
    at: TimeLike = None,
    interval: int = DEFAULT_INTERVAL,
    digits: int = DEFAULT_DIGITS,
    algorithm: str = DEFAULT_ALGORITHM,
) -> str:
    """Return the code for the time step containing ``at``, zero padded to ``digits``."""

    return code_at_step(secret, current_timestep(at, interval), interval, digits, algorithm)


def code_at_step(
    secret: str,
    step: int,
    interval: int = DEFAULT_INTERVAL,
    digits: int = DEFAULT_DIGITS,
    algorithm: str = DEFAULT_ALGORITHM,
) -> str:
    return _totp(secret, interval, digits, algorithm).generate_otp(step)


def verify(
    secret: str | None,
    code: str | None,
    allowed_drift: int = 0,
    at: TimeLike = None,
    interval: int = DEFAULT_INTERVAL,
    digits: int = DEFAULT_DIGITS,
    algorithm: str = DEFAULT_ALGORITHM,
) -> bool:
    """Check ``code`` against every step in ``[t - drift, t + drift]``.

    All ``2 * drift + 1`` candidates are compared in constant time, even after a
    match, so the response time does not reveal which step matched. Blank codes,
    blank secrets and secrets that are not valid base32 are rejected without
    raising.
    """

    if not secret or not code:
        return False
    candidate = str(code).strip()
    if len(candidate) != digits or not candidate.isdigit():
        return False

    drift = max(0, allowed_drift)
    step = current_timestep(at, interval)
    try:
        totp = _totp(secret, interval, digits, algorithm)
        matched = False
        for counter in range(step - drift, step + drift + 1):
            if counter < 0:
                continue
            if strings_equal(totp.generate_otp(counter), candidate):
                matched = True
    except (ValueError, TypeError):
        # binascii.Error for a malformed base32 secret is a ValueError
        return False
    return matched

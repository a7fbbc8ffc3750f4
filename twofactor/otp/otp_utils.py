"""Shared-secret generation and enrollment helpers.

Secrets are random Base32 strings as expected by authenticator apps. The
provisioning URI follows the Key URI format with a fixed parameter order.
"""

from __future__ import annotations

import io
from dataclasses import asdict, dataclass
from urllib.parse import quote

import pyotp
import qrcode

DEFAULT_SECRET_LENGTH: int = 32


@dataclass
class OtpEnrollment:
    """Everything an authenticator app needs to enroll a principal."""

    secret: str
    account_name: str
    issuer: str = ""
    digits: int = 6
    interval: int = 30
    algorithm: str = "SHA1"
    provisioning_uri: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "OtpEnrollment":
        return cls(**data)


def generate_otp_secret(length: int = DEFAULT_SECRET_LENGTH) -> str:
    """Return a random Base32 secret of ``length`` characters."""

    return pyotp.random_base32(length=length)


def build_provisioning_uri(
    secret: str,
    account_name: str,
    issuer: str = "",
    digits: int = 6,
    period: int = 30,
    algorithm: str = "SHA1",
) -> str:
    """Build an ``otpauth://totp/`` URI.

    Parameters are emitted as ``secret``, ``issuer``, ``algorithm``, ``digits``,
    ``period``; ``issuer`` is left out when empty.
    """

    if not secret:
        raise ValueError("Cannot build a provisioning URI without an OTP secret.")

    params = [("secret", secret)]
    if issuer:
        params.append(("issuer", quote(issuer, safe="")))
    params.append(("algorithm", algorithm.upper()))
    params.append(("digits", str(digits)))
    params.append(("period", str(period)))
    query = "&".join(f"{name}={value}" for name, value in params)
    return f"otpauth://totp/{quote(account_name, safe='@')}?{query}"


def render_qr_ascii(provisioning_uri: str) -> str:
    """Render the provisioning URI as an ASCII QR code for terminals."""

    qr = qrcode.QRCode(border=2)
    qr.add_data(provisioning_uri)
    qr.make(fit=True)
    out = io.StringIO()
    qr.print_ascii(out=out)
    return out.getvalue()

"""Per-principal-type OTP settings loaded from keyword arguments or the environment."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OtpSettings(BaseSettings):
    """Settings shared by every principal of one type.

    Build one instance per principal type and hand it to the authenticator.
    Environment variables use the ``TWOFACTOR_`` prefix, e.g.
    ``TWOFACTOR_OTP_SECRET_ENCRYPTION_KEY``.
    """

    model_config = SettingsConfigDict(
        env_prefix="TWOFACTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Secret generation
    otp_secret_length: int = Field(default=32, ge=32)

    # Verification
    otp_allowed_drift: int = Field(default=1, ge=0)
    interval: int = Field(default=30, gt=0)
    digits: int = Field(default=6, ge=6, le=10)
    algorithm: Literal["SHA1", "SHA256", "SHA512"] = "SHA1"

    # Encryption
    otp_secret_encryption_key: str = ""

    # Provisioning
    issuer: str = ""

"""The principal record guarded by the second factor."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

BLANK = "blank"
INVALID = "invalid"
ALREADY_CONSUMED = "already_consumed"


class FieldErrors:
    """Field name to error codes, in insertion order."""

    def __init__(self) -> None:
        self._errors: Dict[str, List[str]] = {}

    def add(self, field_name: str, code: str) -> None:
        self._errors.setdefault(field_name, []).append(code)

    def clear(self) -> None:
        self._errors.clear()

    def get(self, field_name: str) -> List[str]:
        return list(self._errors.get(field_name, []))

    def to_dict(self) -> Dict[str, List[str]]:
        return {name: list(codes) for name, codes in self._errors.items()}

    def __contains__(self, field_name: object) -> bool:
        return field_name in self._errors

    def __bool__(self) -> bool:
        return bool(self._errors)

    def __repr__(self) -> str:
        return f"FieldErrors({self._errors!r})"


@dataclass
class Principal:
    """A user record with its stored OTP state.

    ``otp_attempt`` and ``errors`` are per-operation state and are never
    written by a store.
    """

    id: int
    attributes: Dict[str, Any] = field(default_factory=dict)
    otp_required_for_login: bool = False
    encrypted_otp_secret: Optional[bytes] = None
    encrypted_otp_secret_iv: Optional[bytes] = None
    encrypted_otp_secret_salt: Optional[bytes] = None
    consumed_timestep: Optional[int] = None
    otp_attempt: Optional[str] = field(default=None, repr=False, compare=False)
    errors: FieldErrors = field(default_factory=FieldErrors, repr=False, compare=False)

    @property
    def has_otp_secret(self) -> bool:
        return bool(self.encrypted_otp_secret)

    def assign_attributes(self, changes: Dict[str, Any]) -> None:
        self.attributes.update(changes)

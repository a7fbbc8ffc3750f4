"""Storage adapters for principals and their OTP columns.

Every adapter persists at least :data:`REQUIRED_FIELDS`. ``save`` writes the
ordinary attributes and the encrypted secret but never ``consumed_timestep``;
that column only changes through :meth:`PrincipalStore.consume_timestep`, which
is a single conditional write so two concurrent callers cannot both consume the
same step.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Dict, Protocol

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Integer,
    LargeBinary,
    MetaData,
    Table,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine

from twofactor.models.principal import Principal

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "encrypted_otp_secret",
    "encrypted_otp_secret_iv",
    "encrypted_otp_secret_salt",
    "consumed_timestep",
)


class PrincipalNotFoundError(LookupError):
    """Raised when a principal id is not present in the store."""


class PrincipalStore(Protocol):
    def get(self, principal_id: int) -> Principal: ...

    def add(self, principal: Principal) -> Principal: ...

    def save(self, principal: Principal) -> bool: ...

    def consume_timestep(self, principal_id: int, timestep: int) -> bool:
        """Set ``consumed_timestep`` unless it already equals ``timestep``."""
        ...


def _detached(principal: Principal) -> Principal:
    clone = copy.deepcopy(principal)
    clone.otp_attempt = None
    clone.errors.clear()
    return clone


class InMemoryPrincipalStore:
    """Dictionary-backed store with one lock per principal."""

    def __init__(self) -> None:
        self._records: Dict[int, Principal] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, principal_id: int) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(principal_id, threading.Lock())

    def get(self, principal_id: int) -> Principal:
        with self._lock_for(principal_id):
            record = self._records.get(principal_id)
            if record is None:
                raise PrincipalNotFoundError(f"Principal {principal_id} not found.")
            return _detached(record)

    def add(self, principal: Principal) -> Principal:
        with self._lock_for(principal.id):
            if principal.id in self._records:
                raise ValueError(f"Principal {principal.id} already exists.")
            self._records[principal.id] = _detached(principal)
        return principal

    def save(self, principal: Principal) -> bool:
        with self._lock_for(principal.id):
            stored = self._records.get(principal.id)
            if stored is None:
                return False
            updated = _detached(principal)
            updated.consumed_timestep = stored.consumed_timestep
            self._records[principal.id] = updated
        return True

    def consume_timestep(self, principal_id: int, timestep: int) -> bool:
        with self._lock_for(principal_id):
            stored = self._records.get(principal_id)
            if stored is None or stored.consumed_timestep == timestep:
                return False
            stored.consumed_timestep = timestep
        return True


metadata = MetaData()

principals_table = Table(
    "principals",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("attributes", JSON, nullable=False, default=dict),
    Column("otp_required_for_login", Boolean, nullable=False, default=False),
    Column("encrypted_otp_secret", LargeBinary, nullable=True),
    Column("encrypted_otp_secret_iv", LargeBinary, nullable=True),
    Column("encrypted_otp_secret_salt", LargeBinary, nullable=True),
    Column("consumed_timestep", Integer, nullable=True),
)


class SqlAlchemyPrincipalStore:
    """SQLAlchemy Core store; consumption is a conditional ``UPDATE``."""

    def __init__(self, engine: Engine, table: Table = principals_table) -> None:
        self.engine = engine
        self.table = table

    def create_schema(self) -> None:
        self.table.metadata.create_all(self.engine)

    def get(self, principal_id: int) -> Principal:
        stmt = select(self.table).where(self.table.c.id == principal_id)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().one_or_none()
        if row is None:
            raise PrincipalNotFoundError(f"Principal {principal_id} not found.")
        return Principal(
            id=row["id"],
            attributes=dict(row["attributes"] or {}),
            otp_required_for_login=bool(row["otp_required_for_login"]),
            encrypted_otp_secret=row["encrypted_otp_secret"],
            encrypted_otp_secret_iv=row["encrypted_otp_secret_iv"],
            encrypted_otp_secret_salt=row["encrypted_otp_secret_salt"],
            consumed_timestep=row["consumed_timestep"],
        )

    def _values(self, principal: Principal) -> dict:
        return {
            "attributes": dict(principal.attributes),
            "otp_required_for_login": principal.otp_required_for_login,
            "encrypted_otp_secret": principal.encrypted_otp_secret,
            "encrypted_otp_secret_iv": principal.encrypted_otp_secret_iv,
            "encrypted_otp_secret_salt": principal.encrypted_otp_secret_salt,
        }

    def add(self, principal: Principal) -> Principal:
        values = self._values(principal)
        values["id"] = principal.id
        values["consumed_timestep"] = principal.consumed_timestep
        with self.engine.begin() as conn:
            conn.execute(insert(self.table).values(**values))
        return principal

    def save(self, principal: Principal) -> bool:
        stmt = update(self.table).where(self.table.c.id == principal.id).values(**self._values(principal))
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount == 1

    def consume_timestep(self, principal_id: int, timestep: int) -> bool:
        column = self.table.c.consumed_timestep
        stmt = (
            update(self.table)
            .where(self.table.c.id == principal_id)
            .where(or_(column.is_(None), column != timestep))
            .values(consumed_timestep=timestep)
        )
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        if result.rowcount != 1:
            logger.debug("Time step already consumed or principal missing for id=%s", principal_id)
            return False
        return True

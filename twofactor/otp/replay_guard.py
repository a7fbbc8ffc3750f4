"""At-most-once acceptance of a time step per principal.

Storing the step of the last accepted code is enough to refuse a second code in
the same step. The comparison is against the current, un-drifted step: a code
accepted through the drift window records the current step, not the step it
matched.
"""

from __future__ import annotations

import logging

from twofactor.models.principal import Principal
from twofactor.otp import totp_engine
from twofactor.otp.totp_engine import TimeLike
from twofactor.storage.principal_store import PrincipalStore

logger = logging.getLogger(__name__)


class ReplayGuard:
    def __init__(self, store: PrincipalStore, interval: int = totp_engine.DEFAULT_INTERVAL) -> None:
        self.store = store
        self.interval = interval

    def already_consumed(self, principal: Principal, at: TimeLike = None) -> bool:
        return principal.consumed_timestep == totp_engine.current_timestep(at, self.interval)

    def try_consume(self, principal: Principal, at: TimeLike = None) -> bool:
        """Record the current step as consumed; False if it already was."""

        if self.already_consumed(principal, at):
            logger.info("Rejected replayed OTP for principal id=%s", principal.id)
            return False

        step = totp_engine.current_timestep(at, self.interval)
        if not self.store.consume_timestep(principal.id, step):
            logger.info("Lost OTP consumption race for principal id=%s", principal.id)
            principal.consumed_timestep = self.store.get(principal.id).consumed_timestep
            return False

        principal.consumed_timestep = step
        logger.debug("Consumed time step %s for principal id=%s", step, principal.id)
        return True

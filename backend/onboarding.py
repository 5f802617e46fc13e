import logging
from typing import Optional

from store import LISTENERS, now

logger = logging.getLogger(__name__)

ONBOARDING_REQUIRED = "onboarding_required"


class OnboardingWatcher:
    """Advances a listener out of onboarding once they finish the wizard.

    The status write is conditional on the same state that triggered it, so
    an admin or listener edit racing with the trigger is never overwritten.
    """

    def __init__(self, store, target_status: str = "active"):
        self._store = store
        self.target_status = target_status

    async def on_listener_updated(self, before: Optional[dict], after: Optional[dict]) -> bool:
        if not after:
            return False
        if after.get("status") != ONBOARDING_REQUIRED or after.get("onboardingComplete") is not True:
            return False
        if before is not None and before.get("status") == ONBOARDING_REQUIRED and before.get("onboardingComplete") is True:
            # Already complete before this change; some other field was edited
            return False

        advanced = await self._store.update(
            LISTENERS,
            after["id"],
            {"status": self.target_status, "activatedAt": now()},
            expected={"status": ONBOARDING_REQUIRED, "onboardingComplete": True},
        )
        if advanced:
            logger.info(f"Listener {after['id']} completed onboarding; status -> {self.target_status}")
        else:
            logger.warning(f"Listener {after['id']} changed before onboarding could be applied; skipped")
        return advanced

"""
auth/claims.py -- Display-claim synchronization.

DisplayName and DisplayRole are convenience claims carried into issued tokens
so clients can render "who am I" without another round trip. They are a
best-effort display enhancement, never an authorization gate, which is why
sync failures are reported as warnings instead of failing a sign-in.

Rules:
  1. Idempotent: an exact (type, value) pair already on the identity means
     no write.
  2. DisplayRole is derived from the identity's *current* roles the first time
     it is written, whatever value the caller passed in.
  3. Additive only: an existing claim with a different value is neither
     removed nor overwritten. Readers take the latest value per type
     (current_claims).
  4. At most one insert per sync() call.
"""

from __future__ import annotations

import logging

from auth.errors import IdentityStoreError
from auth.models import DISPLAY_NAME, DISPLAY_ROLE, DerivedClaim, Identity
from auth.store import IdentityStore

logger = logging.getLogger("accounts.auth.claims")

ROLE_SEPARATOR = ", "


def format_roles(roles: set[str]) -> str:
    return ROLE_SEPARATOR.join(sorted(roles))


class ClaimSynchronizer:
    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    def sync(self, identity: Identity, claim_type: str, claim_value: str) -> bool:
        """Attach (claim_type, claim_value) to identity unless already present.

        Returns True when a claim was inserted. IdentityStoreError propagates;
        sync_display_claims() is the caller that downgrades it to a warning.
        """
        claims = self.store.get_claims(identity)

        if claim_type == DISPLAY_ROLE and not any(c.type == DISPLAY_ROLE for c in claims):
            roles = self.store.get_roles(identity)
            if roles:
                claim_value = format_roles(roles)

        if not claim_value:
            return False
        if DerivedClaim(claim_type, claim_value) in claims:
            return False

        self.store.add_claims(identity, [DerivedClaim(claim_type, claim_value)])
        logger.debug("Claim %s written for identity %s", claim_type, identity.id)
        return True

    def sync_display_claims(self, identity: Identity) -> list[str]:
        """Sync DisplayName and DisplayRole; return warnings for any that failed."""
        warnings: list[str] = []
        try:
            roles = self.store.get_roles(identity)
        except IdentityStoreError:
            logger.warning("Could not read roles for identity %s", identity.id, exc_info=True)
            roles = set()
        wanted = [
            (DISPLAY_NAME, identity.display_name),
            (DISPLAY_ROLE, format_roles(roles)),
        ]
        for claim_type, value in wanted:
            try:
                self.sync(identity, claim_type, value)
            except IdentityStoreError:
                logger.warning("Claim sync failed for %s on identity %s", claim_type, identity.id, exc_info=True)
                warnings.append(f"Could not update {claim_type} claim.")
        return warnings

    def current_claims(self, identity: Identity) -> dict[str, str]:
        """Return the canonical value per claim type -- the latest one written."""
        current: dict[str, str] = {}
        for claim in self.store.get_claims(identity):
            current[claim.type] = claim.value
        return current

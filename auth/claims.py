"""
auth/claims.py -- Build the claim set embedded in every access token.

The order is fixed so tokens are reproducible for the same inputs:

    sub, uid, userId, role*, email

uid and userId both start as the identity's internal id. A stored "uid" claim
(an external identifier, e.g. a driver record id in another system) replaces
uid; userId never changes, so audit trails always have one stable reference
while correlation code follows uid. See ClaimType for the precedence table.

Stateless and pure -- no store access, no errors. Missing optional inputs just
omit the claim.
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.models import ClaimRecord, ClaimType, TokenClaimSet, UserIdentity


class ClaimAssembler:
    def assemble(
        self,
        identity: UserIdentity,
        roles: Iterable[str],
        stored_claims: Iterable[ClaimRecord],
    ) -> TokenClaimSet:
        stored = list(stored_claims)
        claims = TokenClaimSet()

        claims.add(ClaimType.SUB, identity.username)
        claims.add(ClaimType.UID, identity.user_id)
        claims.add(ClaimType.USER_ID, identity.user_id)

        seen_roles: set[str] = set()
        for role in roles:
            canonical = role.lower()
            if canonical in seen_roles:
                continue
            seen_roles.add(canonical)
            claims.add(ClaimType.ROLE, canonical)

        email = _first_stored(stored, ClaimType.EMAIL) or identity.email
        if email:
            claims.add(ClaimType.EMAIL, email)

        external_uid = _first_stored(stored, ClaimType.UID)
        if external_uid is not None:
            claims.replace(ClaimType.UID, external_uid)

        return claims


def _first_stored(stored: list[ClaimRecord], claim_type: ClaimType) -> str | None:
    for record in stored:
        if record.type == claim_type.value:
            return record.value
    return None

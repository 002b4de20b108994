"""Primary-user resolution for guest credentials and legacy template fields."""

from __future__ import annotations

from typing import Iterable, Sequence

from vmdeploy.exceptions import CredentialError
from vmdeploy.models import Phase, PrimaryUser, UserSpec


def resolve_primary_user(users: Sequence[UserSpec]) -> PrimaryUser:
    """Pick the first user flagged primary, else the lowest-numbered one."""
    if not users:
        raise CredentialError("No users are declared in the parameter file")
    chosen = next((user for user in users if user.primary), None)
    if chosen is None:
        chosen = min(users, key=lambda user: user.number)
    return PrimaryUser(key=chosen.key, name=chosen.name, password=chosen.password, passwd=chosen.passwd)


def needs_credentials(phases: Iterable[Phase], skip_reset: bool) -> bool:
    for phase in phases:
        if phase in (Phase.GUEST_INIT, Phase.SEED_AND_PERSONALIZE):
            return True
        if phase == Phase.FINALIZE and not skip_reset:
            return True
    return False


def require_credentials(phases: Iterable[Phase], users: Sequence[UserSpec], skip_reset: bool) -> PrimaryUser:
    """Resolve the primary user, failing when guest phases cannot log in.

    Returns the projection even when no guest phase is requested, so long as
    at least one user exists; callers that only clone may ignore it.
    """
    phases = list(phases)
    required = needs_credentials(phases, skip_reset)
    if not users:
        if required:
            raise CredentialError("Guest phases require at least one declared user (users.user1 ...)")
        return PrimaryUser(key="", name="", password=None, passwd=None)
    primary = resolve_primary_user(users)
    if required and (not primary.name or not primary.password):
        raise CredentialError(f"users.{primary.key} needs both a name and a password for in-guest commands")
    return primary

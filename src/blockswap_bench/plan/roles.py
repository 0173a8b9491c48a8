"""Role dispatch: map a group label to the workflow it runs."""

from __future__ import annotations

from enum import Enum

from blockswap_bench.errors import ConfigurationError


class Role(str, Enum):
    PROVIDER = "provider"
    REQUESTOR = "requestor"


# Group labels as they appear in composition files; both spellings of
# "requestor" are in use.
GROUP_LABELS: dict[str, Role] = {
    "providers": Role.PROVIDER,
    "provider": Role.PROVIDER,
    "requestors": Role.REQUESTOR,
    "requestor": Role.REQUESTOR,
    "requesters": Role.REQUESTOR,
    "requester": Role.REQUESTOR,
}


def resolve_role(group_id: str) -> Role:
    """Return the role for ``group_id``.

    Raises:
        ConfigurationError: For an unknown label. Static misconfiguration,
            never retried.
    """
    role = GROUP_LABELS.get(group_id.strip().lower())
    if role is None:
        raise ConfigurationError(
            f"unknown test group id {group_id!r} (expected one of {sorted(GROUP_LABELS)})"
        )
    return role

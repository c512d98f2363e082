"""Capacity evaluation for workspace members and pending invitations.

Pure functions only: callers load the live counts and pass them in, which keeps
this module free to call from request handlers and scheduler jobs alike.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class CapacityReport:
    """Outcome of a single capacity check.

    ``max`` is ``None`` when the plan sets no limit on this axis.
    """

    max: int | None
    current: int
    remaining: int | None
    can_admit: bool
    upgrade_required: bool

    def as_dict(self) -> dict:
        return asdict(self)


def evaluate_capacity(current: int, maximum: int | None) -> CapacityReport:
    """Compute remaining capacity for ``current`` used slots out of ``maximum``.

    Examples:
        >>> evaluate_capacity(4, 5).can_admit
        True
        >>> evaluate_capacity(5, 5).remaining
        0
        >>> evaluate_capacity(12, None).can_admit
        True
    """
    if current < 0:
        raise ValueError("current must be non-negative")

    if maximum is None:
        return CapacityReport(
            max=None,
            current=current,
            remaining=None,
            can_admit=True,
            upgrade_required=False,
        )

    can_admit = current < maximum
    return CapacityReport(
        max=maximum,
        current=current,
        remaining=max(0, maximum - current),
        can_admit=can_admit,
        upgrade_required=not can_admit,
    )


def evaluate_admission(
    members: int,
    pending: int,
    maximum: int | None,
) -> CapacityReport:
    """Check whether one more invitation fits once every pending one is accepted.

    The report's ``current`` stays the live member count; only the decision
    accounts for the outstanding invitations.
    """
    report = evaluate_capacity(members, maximum)
    if maximum is None:
        return report

    can_admit = members + pending < maximum
    return CapacityReport(
        max=maximum,
        current=members,
        remaining=max(0, maximum - members - pending),
        can_admit=can_admit,
        upgrade_required=not can_admit,
    )

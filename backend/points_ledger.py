"""
InternTrack - Points Ledger
Turns task status changes into balance adjustments on the assignee's profile.

The ledger is edge-triggered: it only reacts when the stored previous status
differs from the new one, and it runs inside the caller's transaction so the
status write and the balance write commit or roll back together.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession

from models import Profile, TaskStatus

logger = logging.getLogger("interntrack.ledger")

OVERDUE_PENALTY = 5


class LedgerKind(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


@dataclass
class LedgerEffect:
    """A balance change owed to a profile"""
    kind: LedgerKind
    amount: int
    user_id: str

    def to_dict(self):
        return {"kind": self.kind.value, "amount": self.amount, "user_id": self.user_id}


def effect_for(
    previous: TaskStatus,
    new: TaskStatus,
    task_points: int,
    assignee_id: Optional[str],
) -> Optional[LedgerEffect]:
    """Pure rule set: which balance change, if any, a status change causes"""
    if assignee_id is None or previous == new:
        return None
    if new == TaskStatus.COMPLETED:
        return LedgerEffect(LedgerKind.CREDIT, task_points, assignee_id)
    if new == TaskStatus.OVERDUE:
        return LedgerEffect(LedgerKind.DEBIT, OVERDUE_PENALTY, assignee_id)
    return None


async def apply_effect(db: AsyncSession, effect: LedgerEffect) -> None:
    """Write the balance change as a single atomic UPDATE (no read-modify-write)"""
    if effect.kind == LedgerKind.CREDIT:
        new_points = Profile.points + effect.amount
    else:
        new_points = case(
            (Profile.points > effect.amount, Profile.points - effect.amount),
            else_=0,
        )
    stmt = (
        update(Profile)
        .where(Profile.user_id == effect.user_id)
        .values(points=new_points)
        .execution_options(synchronize_session=False)
    )
    await db.execute(stmt)
    logger.info(f"Ledger {effect.kind.value} of {effect.amount} for {effect.user_id}")


async def apply_status_change(
    db: AsyncSession,
    previous: TaskStatus,
    new: TaskStatus,
    task_points: int,
    assignee_id: Optional[str],
) -> Optional[LedgerEffect]:
    effect = effect_for(previous, new, task_points, assignee_id)
    if effect is not None:
        await apply_effect(db, effect)
    return effect

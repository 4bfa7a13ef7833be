"""
Consistency checks for a group's ledger and balance cache.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fairshare import ledger
from fairshare.db import DbClient, cached_user_ids

logger = logging.getLogger(__name__)


@dataclass
class GroupAudit:
    group_id: int
    problems: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems


def audit_group(db: DbClient, group_id: int) -> GroupAudit:
    audit = GroupAudit(group_id=group_id)

    cached = {row.user_id: row.balance_amount for row in db.get_cached_balances(group_id)}
    cached_total = sum(cached.values(), ledger.ZERO)
    if cached_total != ledger.ZERO:
        audit.problems.append(f"cached balances sum to {cached_total}, expected 0.00")

    for expense in db.list_expenses(group_id):
        owed = sum((p.amount_owed for p in expense.participants), ledger.ZERO)
        if abs(owed - expense.total_amount) > ledger.CENT:
            audit.problems.append(
                f"expense {expense.id} shares sum to {owed}, total is {expense.total_amount}"
            )

    fresh = db.compute_group_balances(group_id)
    member_ids = [member.user_id for member in db.list_members(group_id)]
    expected_users = cached_user_ids(member_ids, fresh)
    for user_id in sorted(expected_users | set(cached)):
        expected = fresh.get(user_id, ledger.ZERO)
        if user_id not in expected_users:
            audit.problems.append(f"user {user_id} has a stale cache row")
        elif user_id not in cached:
            audit.problems.append(f"user {user_id} is missing from the cache")
        elif cached[user_id] != expected:
            audit.problems.append(
                f"user {user_id} cached balance {cached[user_id]} != computed {expected}"
            )

    fresh_pairs = db.compute_pair_balances(group_id)
    for user_id in sorted(expected_users):
        for pair in db.get_pair_balances(group_id, user_id):
            expected = fresh_pairs.get((pair.from_user_id, pair.to_user_id), ledger.ZERO)
            if pair.balance_amount != expected:
                audit.problems.append(
                    f"pair {pair.from_user_id}->{pair.to_user_id} cached "
                    f"{pair.balance_amount} != computed {expected}"
                )

    if audit.problems:
        logger.warning("Group %s failed %d checks", group_id, len(audit.problems))
    return audit

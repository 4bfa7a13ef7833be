"""
Database abstraction for Postgres and an in-memory test implementation.

Both clients keep the denormalized balance tables (per-user balances and
user-to-user balances) in step with expenses and payments: every write that
touches money recalculates the group's cached balances before returning.
"""

from __future__ import annotations

import functools
import itertools
import logging
import re
import secrets
import string
import threading
import time
from dataclasses import dataclass, field
from datetime import date as date_type
from decimal import Decimal
from typing import Dict, Iterable, Optional, Protocol, Sequence

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    create_engine,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

from fairshare import ledger
from fairshare.errors import (
    InvalidRequestError,
    NotFoundError,
    OutstandingBalanceError,
)
from fairshare.types import ActivityType, MemberRole

logger = logging.getLogger(__name__)

INVITE_ALPHABET = string.ascii_letters + string.digits


def generate_invite_code(length: int = 8) -> str:
    return "".join(secrets.choice(INVITE_ALPHABET) for _ in range(length))


def username_from_email(email: str) -> str:
    local = email.split("@", 1)[0].lower()
    return re.sub(r"[^a-z0-9._-]", "", local) or "user"


def normalize_email(email: str) -> str:
    return email.strip().lower()


class DbClient(Protocol):
    """Interface for database access."""

    def ping(self) -> bool:
        ...

    # Users
    def create_user(
        self,
        *,
        email: str,
        name: str,
        username: Optional[str] = None,
        firebase_uid: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> "UserRecord":
        ...

    def get_user(self, user_id: int) -> Optional["UserRecord"]:
        ...

    def get_users(self, user_ids: Iterable[int]) -> Dict[int, "UserRecord"]:
        ...

    def get_user_by_email(self, email: str) -> Optional["UserRecord"]:
        ...

    def get_user_by_firebase_uid(self, firebase_uid: str) -> Optional["UserRecord"]:
        ...

    def update_user(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        firebase_uid: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> "UserRecord":
        ...

    # Groups
    def create_group(
        self, *, name: str, created_by: int, description: Optional[str] = None
    ) -> "GroupRecord":
        ...

    def get_group(self, group_id: int) -> Optional["GroupRecord"]:
        ...

    def list_groups_for_user(
        self, user_id: int, limit: Optional[int] = None, offset: int = 0
    ) -> list["GroupRecord"]:
        ...

    def count_groups_for_user(self, user_id: int) -> int:
        ...

    def list_group_ids(self) -> list[int]:
        ...

    def update_group(
        self,
        group_id: int,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> "GroupRecord":
        ...

    def delete_group(self, group_id: int) -> bool:
        ...

    # Members
    def add_member(
        self, group_id: int, user_id: int, role: MemberRole = MemberRole.MEMBER
    ) -> "MemberRecord":
        ...

    def get_member(self, group_id: int, user_id: int) -> Optional["MemberRecord"]:
        ...

    def is_member(self, group_id: int, user_id: int) -> bool:
        ...

    def list_members(self, group_id: int) -> list["MemberRecord"]:
        ...

    def remove_member(self, group_id: int, user_id: int) -> bool:
        ...

    # Invites
    def create_invite(
        self,
        group_id: int,
        created_by: int,
        *,
        expires_at: Optional[float] = None,
        code_length: int = 8,
    ) -> "InviteRecord":
        ...

    def get_invite(self, invite_id: int) -> Optional["InviteRecord"]:
        ...

    def get_invite_by_code(self, invite_code: str) -> Optional["InviteRecord"]:
        ...

    def list_invites(self, group_id: int) -> list["InviteRecord"]:
        ...

    def deactivate_invite(self, invite_id: int) -> bool:
        ...

    # Expenses
    def create_expense(
        self,
        *,
        group_id: int,
        title: str,
        total_amount: Decimal,
        paid_by: int,
        participants: Sequence[tuple[int, Decimal]],
        date: Optional[date_type] = None,
        notes: Optional[str] = None,
    ) -> "ExpenseRecord":
        ...

    def get_expense(self, expense_id: int) -> Optional["ExpenseRecord"]:
        ...

    def list_expenses(
        self, group_id: int, limit: Optional[int] = None, offset: int = 0
    ) -> list["ExpenseRecord"]:
        ...

    def count_expenses(self, group_id: int) -> int:
        ...

    def update_expense(
        self,
        expense_id: int,
        *,
        title: Optional[str] = None,
        total_amount: Optional[Decimal] = None,
        paid_by: Optional[int] = None,
        date: Optional[date_type] = None,
        notes: Optional[str] = None,
        participants: Optional[Sequence[tuple[int, Decimal]]] = None,
    ) -> "ExpenseRecord":
        ...

    def delete_expense(self, expense_id: int) -> bool:
        ...

    # Payments
    def create_payment(
        self,
        *,
        group_id: int,
        paid_by: int,
        paid_to: int,
        amount: Decimal,
        date: Optional[date_type] = None,
        note: Optional[str] = None,
    ) -> "PaymentRecord":
        ...

    def get_payment(self, payment_id: int) -> Optional["PaymentRecord"]:
        ...

    def list_payments(self, group_id: int) -> list["PaymentRecord"]:
        ...

    def update_payment(
        self,
        payment_id: int,
        *,
        amount: Optional[Decimal] = None,
        paid_by: Optional[int] = None,
        paid_to: Optional[int] = None,
        date: Optional[date_type] = None,
        note: Optional[str] = None,
    ) -> "PaymentRecord":
        ...

    def delete_payment(self, payment_id: int) -> bool:
        ...

    # Activity
    def log_activity(
        self,
        *,
        user_id: int,
        action_type: ActivityType,
        group_id: Optional[int] = None,
        expense_id: Optional[int] = None,
        payment_id: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> "ActivityRecord":
        ...

    def list_activity_for_user(
        self, user_id: int, limit: Optional[int] = 20
    ) -> list["ActivityRecord"]:
        ...

    def list_activity_for_group(self, group_id: int) -> list["ActivityRecord"]:
        ...

    # Balances
    def compute_group_balances(self, group_id: int) -> Dict[int, Decimal]:
        ...

    def compute_pair_balances(self, group_id: int) -> Dict[tuple[int, int], Decimal]:
        ...

    def recalculate_group_balances(self, group_id: int) -> Dict[int, Decimal]:
        ...

    def get_cached_balances(self, group_id: int) -> list["BalanceRecord"]:
        ...

    def get_cached_balance(self, user_id: int, group_id: int) -> Decimal:
        ...

    def get_pair_balances(self, group_id: int, user_id: int) -> list["PairBalanceRecord"]:
        ...

    def get_all_pair_balances_for_user(self, user_id: int) -> list["PairBalanceRecord"]:
        ...


@dataclass
class UserRecord:
    id: int
    email: str
    name: str
    username: str
    firebase_uid: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "username": self.username,
            "avatar_url": self.avatar_url,
            "created_at": self.created_at,
        }


@dataclass
class GroupRecord:
    id: int
    name: str
    created_by: int
    description: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class MemberRecord:
    id: int
    group_id: int
    user_id: int
    role: MemberRole = MemberRole.MEMBER
    archived: bool = False
    joined_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "user_id": self.user_id,
            "role": self.role.value,
            "joined_at": self.joined_at,
        }


@dataclass
class InviteRecord:
    id: int
    group_id: int
    invite_code: str
    created_by: int
    active: bool = True
    expires_at: Optional[float] = None
    created_at: float = field(default_factory=lambda: time.time())

    def is_usable(self, now: Optional[float] = None) -> bool:
        if not self.active:
            return False
        now = time.time() if now is None else now
        return self.expires_at is None or self.expires_at > now

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "invite_code": self.invite_code,
            "created_by": self.created_by,
            "active": self.active,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
        }


@dataclass
class ParticipantRecord:
    user_id: int
    amount_owed: Decimal


@dataclass
class ExpenseRecord:
    id: int
    group_id: int
    title: str
    total_amount: Decimal
    paid_by: int
    date: date_type
    notes: Optional[str] = None
    participants: list[ParticipantRecord] = field(default_factory=list)
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "title": self.title,
            "total_amount": self.total_amount,
            "paid_by": self.paid_by,
            "date": self.date,
            "notes": self.notes,
            "participants": [
                {"user_id": p.user_id, "amount_owed": p.amount_owed}
                for p in self.participants
            ],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class PaymentRecord:
    id: int
    group_id: int
    paid_by: int
    paid_to: int
    amount: Decimal
    date: date_type
    note: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "paid_by": self.paid_by,
            "paid_to": self.paid_to,
            "amount": self.amount,
            "date": self.date,
            "note": self.note,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class ActivityRecord:
    id: int
    user_id: int
    action_type: ActivityType
    group_id: Optional[int] = None
    expense_id: Optional[int] = None
    payment_id: Optional[int] = None
    metadata: Optional[dict] = None
    created_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action_type": self.action_type.value,
            "group_id": self.group_id,
            "expense_id": self.expense_id,
            "payment_id": self.payment_id,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }


@dataclass
class BalanceRecord:
    group_id: int
    user_id: int
    balance_amount: Decimal
    last_updated: float = field(default_factory=lambda: time.time())


@dataclass
class PairBalanceRecord:
    group_id: int
    from_user_id: int
    to_user_id: int
    balance_amount: Decimal
    last_updated: float = field(default_factory=lambda: time.time())


def cached_user_ids(
    active_member_ids: Iterable[int], balances: Dict[int, Decimal]
) -> set[int]:
    """
    Users that get cache rows: active members, plus former members whose
    balance is still unsettled.
    """
    keep = set(active_member_ids)
    keep.update(
        user_id for user_id, amount in balances.items() if not ledger.is_settled(amount)
    )
    return keep


def check_member_settled(
    pairs: Dict[tuple[int, int], Decimal], user_id: int
) -> None:
    for (from_user_id, _), amount in pairs.items():
        if from_user_id == user_id and not ledger.is_settled(amount):
            raise OutstandingBalanceError(
                "User has outstanding debts with other group members. "
                "All balances must be settled before they can be removed."
            )


def group_lock_statement(group_id: int):
    """
    Row lock on a group taken before its balance cache is rebuilt.

    FOR NO KEY UPDATE does not conflict with the key-share locks that inserting
    expenses or payments takes on the group row. SQLite has no row locks and
    ignores it.
    """
    return (
        select(GroupRow.id)
        .where(GroupRow.id == group_id)
        .with_for_update(key_share=True)
    )


def _synchronized(cls):
    """Run every public method of ``cls`` under the instance's ``_lock``."""

    def wrap(method):
        @functools.wraps(method)
        def locked(self, *args, **kwargs):
            with self._lock:
                return method(self, *args, **kwargs)

        return locked

    for name, attr in list(vars(cls).items()):
        if callable(attr) and not name.startswith("_"):
            setattr(cls, name, wrap(attr))
    return cls


@_synchronized
class InMemoryDbClient:
    """
    Simple in-memory database for development and tests.

    Public methods hold one re-entrant lock, so request threads never see a
    half-applied write.
    """

    def __init__(self):
        self.users: Dict[int, UserRecord] = {}
        self.groups: Dict[int, GroupRecord] = {}
        self.members: Dict[int, MemberRecord] = {}
        self.invites: Dict[int, InviteRecord] = {}
        self.expenses: Dict[int, ExpenseRecord] = {}
        self.payments: Dict[int, PaymentRecord] = {}
        self.activity: Dict[int, ActivityRecord] = {}
        self.balances: Dict[tuple[int, int], BalanceRecord] = {}
        self.pair_balances: Dict[tuple[int, int, int], PairBalanceRecord] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        for table in (
            self.users,
            self.groups,
            self.members,
            self.invites,
            self.expenses,
            self.payments,
            self.activity,
            self.balances,
            self.pair_balances,
        ):
            table.clear()
        self._ids = itertools.count(1)

    def _next_id(self) -> int:
        return next(self._ids)

    def ping(self) -> bool:
        return True

    # Users

    def create_user(
        self,
        *,
        email: str,
        name: str,
        username: Optional[str] = None,
        firebase_uid: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> UserRecord:
        email = normalize_email(email)
        if self.get_user_by_email(email):
            raise InvalidRequestError("Email already in use")
        base = username or username_from_email(email)
        taken = {user.username for user in self.users.values()}
        candidate = base
        suffix = 1
        while candidate in taken:
            suffix += 1
            candidate = f"{base}{suffix}"
        user = UserRecord(
            id=self._next_id(),
            email=email,
            name=name,
            username=candidate,
            firebase_uid=firebase_uid,
            avatar_url=avatar_url,
        )
        self.users[user.id] = user
        return user

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        return self.users.get(user_id)

    def get_users(self, user_ids: Iterable[int]) -> Dict[int, UserRecord]:
        return {uid: self.users[uid] for uid in set(user_ids) if uid in self.users}

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        email = normalize_email(email)
        for user in self.users.values():
            if user.email == email:
                return user
        return None

    def get_user_by_firebase_uid(self, firebase_uid: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.firebase_uid == firebase_uid:
                return user
        return None

    def update_user(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        firebase_uid: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> UserRecord:
        user = self.users.get(user_id)
        if not user:
            raise NotFoundError("User not found")
        if email is not None:
            email = normalize_email(email)
            existing = self.get_user_by_email(email)
            if existing and existing.id != user_id:
                raise InvalidRequestError("Email already in use")
            user.email = email
        if name is not None:
            user.name = name
        if firebase_uid is not None:
            user.firebase_uid = firebase_uid
        if avatar_url is not None:
            user.avatar_url = avatar_url
        user.updated_at = time.time()
        return user

    # Groups

    def create_group(
        self, *, name: str, created_by: int, description: Optional[str] = None
    ) -> GroupRecord:
        group = GroupRecord(
            id=self._next_id(),
            name=name,
            created_by=created_by,
            description=description,
        )
        self.groups[group.id] = group
        self.add_member(group.id, created_by, MemberRole.OWNER)
        return group

    def get_group(self, group_id: int) -> Optional[GroupRecord]:
        return self.groups.get(group_id)

    def _groups_for_user(self, user_id: int) -> list[GroupRecord]:
        group_ids = {
            m.group_id
            for m in self.members.values()
            if m.user_id == user_id and not m.archived
        }
        groups = [self.groups[gid] for gid in group_ids if gid in self.groups]
        return sorted(groups, key=lambda g: (g.created_at, g.id), reverse=True)

    def list_groups_for_user(
        self, user_id: int, limit: Optional[int] = None, offset: int = 0
    ) -> list[GroupRecord]:
        groups = self._groups_for_user(user_id)[offset:]
        return groups[:limit] if limit is not None else groups

    def count_groups_for_user(self, user_id: int) -> int:
        return len(self._groups_for_user(user_id))

    def list_group_ids(self) -> list[int]:
        return sorted(self.groups)

    def update_group(
        self,
        group_id: int,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> GroupRecord:
        group = self.groups.get(group_id)
        if not group:
            raise NotFoundError("Group not found")
        if name is not None:
            group.name = name
        if description is not None:
            group.description = description
        group.updated_at = time.time()
        return group

    def delete_group(self, group_id: int) -> bool:
        if group_id not in self.groups:
            return False
        del self.groups[group_id]
        for table in (
            self.members,
            self.invites,
            self.expenses,
            self.payments,
            self.activity,
        ):
            for key in [k for k, row in table.items() if row.group_id == group_id]:
                del table[key]
        self._drop_cache(group_id)
        return True

    # Members

    def add_member(
        self, group_id: int, user_id: int, role: MemberRole = MemberRole.MEMBER
    ) -> MemberRecord:
        if group_id not in self.groups:
            raise NotFoundError("Group not found")
        for member in self.members.values():
            if member.group_id == group_id and member.user_id == user_id:
                if not member.archived:
                    raise InvalidRequestError("User is already a member of this group")
                member.archived = False
                member.role = role
                member.joined_at = time.time()
                self.recalculate_group_balances(group_id)
                return member
        member = MemberRecord(
            id=self._next_id(), group_id=group_id, user_id=user_id, role=role
        )
        self.members[member.id] = member
        self.recalculate_group_balances(group_id)
        return member

    def get_member(self, group_id: int, user_id: int) -> Optional[MemberRecord]:
        for member in self.members.values():
            if (
                member.group_id == group_id
                and member.user_id == user_id
                and not member.archived
            ):
                return member
        return None

    def is_member(self, group_id: int, user_id: int) -> bool:
        return self.get_member(group_id, user_id) is not None

    def list_members(self, group_id: int) -> list[MemberRecord]:
        members = [
            m
            for m in self.members.values()
            if m.group_id == group_id and not m.archived
        ]
        return sorted(members, key=lambda m: (m.joined_at, m.id))

    def remove_member(self, group_id: int, user_id: int) -> bool:
        member = self.get_member(group_id, user_id)
        if not member:
            return False
        check_member_settled(self.compute_pair_balances(group_id), user_id)
        member.archived = True
        self.recalculate_group_balances(group_id)
        return True

    # Invites

    def create_invite(
        self,
        group_id: int,
        created_by: int,
        *,
        expires_at: Optional[float] = None,
        code_length: int = 8,
    ) -> InviteRecord:
        codes = {invite.invite_code for invite in self.invites.values()}
        code = generate_invite_code(code_length)
        while code in codes:
            code = generate_invite_code(code_length)
        invite = InviteRecord(
            id=self._next_id(),
            group_id=group_id,
            invite_code=code,
            created_by=created_by,
            expires_at=expires_at,
        )
        self.invites[invite.id] = invite
        return invite

    def get_invite(self, invite_id: int) -> Optional[InviteRecord]:
        return self.invites.get(invite_id)

    def get_invite_by_code(self, invite_code: str) -> Optional[InviteRecord]:
        for invite in self.invites.values():
            if invite.invite_code == invite_code:
                return invite
        return None

    def list_invites(self, group_id: int) -> list[InviteRecord]:
        invites = [i for i in self.invites.values() if i.group_id == group_id]
        return sorted(invites, key=lambda i: (i.created_at, i.id))

    def deactivate_invite(self, invite_id: int) -> bool:
        invite = self.invites.get(invite_id)
        if not invite:
            return False
        invite.active = False
        return True

    # Expenses

    def create_expense(
        self,
        *,
        group_id: int,
        title: str,
        total_amount: Decimal,
        paid_by: int,
        participants: Sequence[tuple[int, Decimal]],
        date: Optional[date_type] = None,
        notes: Optional[str] = None,
    ) -> ExpenseRecord:
        if group_id not in self.groups:
            raise NotFoundError("Group not found")
        total_amount = ledger.to_money(total_amount)
        ledger.validate_participants(total_amount, participants)
        expense = ExpenseRecord(
            id=self._next_id(),
            group_id=group_id,
            title=title,
            total_amount=total_amount,
            paid_by=paid_by,
            date=date or date_type.today(),
            notes=notes,
            participants=[
                ParticipantRecord(user_id=uid, amount_owed=ledger.to_money(amount))
                for uid, amount in participants
            ],
        )
        self.expenses[expense.id] = expense
        self.recalculate_group_balances(group_id)
        return expense

    def get_expense(self, expense_id: int) -> Optional[ExpenseRecord]:
        return self.expenses.get(expense_id)

    def list_expenses(
        self, group_id: int, limit: Optional[int] = None, offset: int = 0
    ) -> list[ExpenseRecord]:
        expenses = sorted(
            (e for e in self.expenses.values() if e.group_id == group_id),
            key=lambda e: (e.date, e.id),
            reverse=True,
        )[offset:]
        return expenses[:limit] if limit is not None else expenses

    def count_expenses(self, group_id: int) -> int:
        return sum(1 for e in self.expenses.values() if e.group_id == group_id)

    def update_expense(
        self,
        expense_id: int,
        *,
        title: Optional[str] = None,
        total_amount: Optional[Decimal] = None,
        paid_by: Optional[int] = None,
        date: Optional[date_type] = None,
        notes: Optional[str] = None,
        participants: Optional[Sequence[tuple[int, Decimal]]] = None,
    ) -> ExpenseRecord:
        expense = self.expenses.get(expense_id)
        if not expense:
            raise NotFoundError("Expense not found")
        new_total = (
            ledger.to_money(total_amount)
            if total_amount is not None
            else expense.total_amount
        )
        new_participants = (
            list(participants)
            if participants is not None
            else [(p.user_id, p.amount_owed) for p in expense.participants]
        )
        ledger.validate_participants(new_total, new_participants)

        expense.total_amount = new_total
        expense.participants = [
            ParticipantRecord(user_id=uid, amount_owed=ledger.to_money(amount))
            for uid, amount in new_participants
        ]
        if title is not None:
            expense.title = title
        if paid_by is not None:
            expense.paid_by = paid_by
        if date is not None:
            expense.date = date
        if notes is not None:
            expense.notes = notes
        expense.updated_at = time.time()
        self.recalculate_group_balances(expense.group_id)
        return expense

    def delete_expense(self, expense_id: int) -> bool:
        expense = self.expenses.pop(expense_id, None)
        if not expense:
            return False
        for entry in self.activity.values():
            if entry.expense_id == expense_id:
                entry.expense_id = None
        self.recalculate_group_balances(expense.group_id)
        return True

    # Payments

    def create_payment(
        self,
        *,
        group_id: int,
        paid_by: int,
        paid_to: int,
        amount: Decimal,
        date: Optional[date_type] = None,
        note: Optional[str] = None,
    ) -> PaymentRecord:
        if group_id not in self.groups:
            raise NotFoundError("Group not found")
        payment = PaymentRecord(
            id=self._next_id(),
            group_id=group_id,
            paid_by=paid_by,
            paid_to=paid_to,
            amount=ledger.validate_payment_amount(amount),
            date=date or date_type.today(),
            note=note,
        )
        self.payments[payment.id] = payment
        self.recalculate_group_balances(group_id)
        return payment

    def get_payment(self, payment_id: int) -> Optional[PaymentRecord]:
        return self.payments.get(payment_id)

    def list_payments(self, group_id: int) -> list[PaymentRecord]:
        return sorted(
            (p for p in self.payments.values() if p.group_id == group_id),
            key=lambda p: (p.date, p.id),
            reverse=True,
        )

    def update_payment(
        self,
        payment_id: int,
        *,
        amount: Optional[Decimal] = None,
        paid_by: Optional[int] = None,
        paid_to: Optional[int] = None,
        date: Optional[date_type] = None,
        note: Optional[str] = None,
    ) -> PaymentRecord:
        payment = self.payments.get(payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        if amount is not None:
            payment.amount = ledger.validate_payment_amount(amount)
        if paid_by is not None:
            payment.paid_by = paid_by
        if paid_to is not None:
            payment.paid_to = paid_to
        if date is not None:
            payment.date = date
        if note is not None:
            payment.note = note
        payment.updated_at = time.time()
        self.recalculate_group_balances(payment.group_id)
        return payment

    def delete_payment(self, payment_id: int) -> bool:
        payment = self.payments.pop(payment_id, None)
        if not payment:
            return False
        for entry in self.activity.values():
            if entry.payment_id == payment_id:
                entry.payment_id = None
        self.recalculate_group_balances(payment.group_id)
        return True

    # Activity

    def log_activity(
        self,
        *,
        user_id: int,
        action_type: ActivityType,
        group_id: Optional[int] = None,
        expense_id: Optional[int] = None,
        payment_id: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> ActivityRecord:
        entry = ActivityRecord(
            id=self._next_id(),
            user_id=user_id,
            action_type=action_type,
            group_id=group_id,
            expense_id=expense_id,
            payment_id=payment_id,
            metadata=metadata,
        )
        self.activity[entry.id] = entry
        return entry

    def list_activity_for_user(
        self, user_id: int, limit: Optional[int] = 20
    ) -> list[ActivityRecord]:
        group_ids = {g.id for g in self._groups_for_user(user_id)}
        entries = [
            a
            for a in self.activity.values()
            if a.user_id == user_id or a.group_id in group_ids
        ]
        entries.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return entries[:limit]

    def list_activity_for_group(self, group_id: int) -> list[ActivityRecord]:
        entries = [a for a in self.activity.values() if a.group_id == group_id]
        entries.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return entries

    # Balances

    def _sources(self, group_id: int):
        member_ids = [m.user_id for m in self.list_members(group_id)]
        expenses = [e for e in self.expenses.values() if e.group_id == group_id]
        payments = [p for p in self.payments.values() if p.group_id == group_id]
        return member_ids, expenses, payments

    def compute_group_balances(self, group_id: int) -> Dict[int, Decimal]:
        return ledger.compute_group_balances(*self._sources(group_id))

    def compute_pair_balances(self, group_id: int) -> Dict[tuple[int, int], Decimal]:
        return ledger.compute_pairwise_balances(*self._sources(group_id))

    def _drop_cache(self, group_id: int) -> None:
        for key in [k for k in self.balances if k[0] == group_id]:
            del self.balances[key]
        for key in [k for k in self.pair_balances if k[0] == group_id]:
            del self.pair_balances[key]

    def recalculate_group_balances(self, group_id: int) -> Dict[int, Decimal]:
        if group_id not in self.groups:
            raise NotFoundError("Group not found")
        member_ids, expenses, payments = self._sources(group_id)
        balances = ledger.compute_group_balances(member_ids, expenses, payments)
        pairs = ledger.compute_pairwise_balances(member_ids, expenses, payments)
        keep = cached_user_ids(member_ids, balances)

        self._drop_cache(group_id)
        now = time.time()
        for user_id in keep:
            self.balances[(group_id, user_id)] = BalanceRecord(
                group_id=group_id,
                user_id=user_id,
                balance_amount=balances.get(user_id, ledger.ZERO),
                last_updated=now,
            )
        for (from_id, to_id), amount in pairs.items():
            if from_id in keep and to_id in keep:
                self.pair_balances[(group_id, from_id, to_id)] = PairBalanceRecord(
                    group_id=group_id,
                    from_user_id=from_id,
                    to_user_id=to_id,
                    balance_amount=amount,
                    last_updated=now,
                )
        return {uid: amount for uid, amount in balances.items() if uid in keep}

    def get_cached_balances(self, group_id: int) -> list[BalanceRecord]:
        rows = [b for (gid, _), b in self.balances.items() if gid == group_id]
        return sorted(rows, key=lambda b: b.user_id)

    def get_cached_balance(self, user_id: int, group_id: int) -> Decimal:
        row = self.balances.get((group_id, user_id))
        return row.balance_amount if row else ledger.ZERO

    def get_pair_balances(self, group_id: int, user_id: int) -> list[PairBalanceRecord]:
        rows = [
            p
            for (gid, from_id, _), p in self.pair_balances.items()
            if gid == group_id and from_id == user_id
        ]
        return sorted(rows, key=lambda p: p.to_user_id)

    def get_all_pair_balances_for_user(self, user_id: int) -> list[PairBalanceRecord]:
        rows = [p for p in self.pair_balances.values() if p.from_user_id == user_id]
        return sorted(rows, key=lambda p: (p.group_id, p.to_user_id))


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).

    Writes that touch expenses, participants, payments or membership rebuild
    the group's balance tables in the same transaction.
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    # Row -> record conversion

    def _to_user_record(self, row: "UserRow") -> UserRecord:
        return UserRecord(
            id=row.id,
            email=row.email,
            name=row.name,
            username=row.username,
            firebase_uid=row.firebase_uid,
            avatar_url=row.avatar_url,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_group_record(self, row: "GroupRow") -> GroupRecord:
        return GroupRecord(
            id=row.id,
            name=row.name,
            created_by=row.created_by,
            description=row.description,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_member_record(self, row: "MemberRow") -> MemberRecord:
        return MemberRecord(
            id=row.id,
            group_id=row.group_id,
            user_id=row.user_id,
            role=MemberRole(row.role),
            archived=row.archived,
            joined_at=row.joined_at,
        )

    def _to_invite_record(self, row: "InviteRow") -> InviteRecord:
        return InviteRecord(
            id=row.id,
            group_id=row.group_id,
            invite_code=row.invite_code,
            created_by=row.created_by,
            active=row.active,
            expires_at=row.expires_at,
            created_at=row.created_at,
        )

    def _to_expense_record(self, row: "ExpenseRow") -> ExpenseRecord:
        return ExpenseRecord(
            id=row.id,
            group_id=row.group_id,
            title=row.title,
            total_amount=ledger.to_money(row.total_amount),
            paid_by=row.paid_by,
            date=row.date,
            notes=row.notes,
            participants=[
                ParticipantRecord(
                    user_id=p.user_id, amount_owed=ledger.to_money(p.amount_owed)
                )
                for p in row.participants
            ],
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_payment_record(self, row: "PaymentRow") -> PaymentRecord:
        return PaymentRecord(
            id=row.id,
            group_id=row.group_id,
            paid_by=row.paid_by,
            paid_to=row.paid_to,
            amount=ledger.to_money(row.amount),
            date=row.date,
            note=row.note,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_activity_record(self, row: "ActivityRow") -> ActivityRecord:
        return ActivityRecord(
            id=row.id,
            user_id=row.user_id,
            action_type=ActivityType(row.action_type),
            group_id=row.group_id,
            expense_id=row.expense_id,
            payment_id=row.payment_id,
            metadata=row.data,
            created_at=row.created_at,
        )

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False

    # Users

    def create_user(
        self,
        *,
        email: str,
        name: str,
        username: Optional[str] = None,
        firebase_uid: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> UserRecord:
        email = normalize_email(email)
        now = time.time()
        with self.Session() as session:
            if session.execute(
                select(UserRow.id).where(UserRow.email == email)
            ).first():
                raise InvalidRequestError("Email already in use")
            base = username or username_from_email(email)
            candidate = base
            suffix = 1
            while session.execute(
                select(UserRow.id).where(UserRow.username == candidate)
            ).first():
                suffix += 1
                candidate = f"{base}{suffix}"
            row = UserRow(
                email=email,
                name=name,
                username=candidate,
                firebase_uid=firebase_uid,
                avatar_url=avatar_url,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_user_record(row)

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return self._to_user_record(row) if row else None

    def get_users(self, user_ids: Iterable[int]) -> Dict[int, UserRecord]:
        ids = set(user_ids)
        if not ids:
            return {}
        with self.Session() as session:
            rows = session.execute(select(UserRow).where(UserRow.id.in_(ids))).scalars()
            return {row.id: self._to_user_record(row) for row in rows}

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.email == normalize_email(email))
            ).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def get_user_by_firebase_uid(self, firebase_uid: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.firebase_uid == firebase_uid)
            ).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def update_user(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        firebase_uid: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> UserRecord:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            if not row:
                raise NotFoundError("User not found")
            if email is not None:
                email = normalize_email(email)
                clash = session.execute(
                    select(UserRow.id).where(UserRow.email == email, UserRow.id != user_id)
                ).first()
                if clash:
                    raise InvalidRequestError("Email already in use")
                row.email = email
            if name is not None:
                row.name = name
            if firebase_uid is not None:
                row.firebase_uid = firebase_uid
            if avatar_url is not None:
                row.avatar_url = avatar_url
            row.updated_at = time.time()
            session.commit()
            return self._to_user_record(row)

    # Groups

    def create_group(
        self, *, name: str, created_by: int, description: Optional[str] = None
    ) -> GroupRecord:
        now = time.time()
        with self.Session() as session:
            group = GroupRow(
                name=name,
                description=description,
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            session.add(group)
            session.flush()
            session.add(
                MemberRow(
                    group_id=group.id,
                    user_id=created_by,
                    role=MemberRole.OWNER.value,
                    archived=False,
                    joined_at=now,
                )
            )
            session.flush()
            self._recalculate(session, group.id)
            session.commit()
            return self._to_group_record(group)

    def get_group(self, group_id: int) -> Optional[GroupRecord]:
        with self.Session() as session:
            row = session.get(GroupRow, group_id)
            return self._to_group_record(row) if row else None

    def _user_groups_stmt(self, user_id: int):
        return (
            select(GroupRow)
            .join(MemberRow, MemberRow.group_id == GroupRow.id)
            .where(MemberRow.user_id == user_id, MemberRow.archived.is_(False))
        )

    def list_groups_for_user(
        self, user_id: int, limit: Optional[int] = None, offset: int = 0
    ) -> list[GroupRecord]:
        stmt = (
            self._user_groups_stmt(user_id)
            .order_by(GroupRow.created_at.desc(), GroupRow.id.desc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.Session() as session:
            return [self._to_group_record(row) for row in session.execute(stmt).scalars()]

    def count_groups_for_user(self, user_id: int) -> int:
        stmt = select(func.count()).select_from(
            self._user_groups_stmt(user_id).subquery()
        )
        with self.Session() as session:
            return session.execute(stmt).scalar_one()

    def list_group_ids(self) -> list[int]:
        with self.Session() as session:
            return list(
                session.execute(select(GroupRow.id).order_by(GroupRow.id)).scalars()
            )

    def update_group(
        self,
        group_id: int,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> GroupRecord:
        with self.Session() as session:
            row = session.get(GroupRow, group_id)
            if not row:
                raise NotFoundError("Group not found")
            if name is not None:
                row.name = name
            if description is not None:
                row.description = description
            row.updated_at = time.time()
            session.commit()
            return self._to_group_record(row)

    def delete_group(self, group_id: int) -> bool:
        with self.Session() as session:
            group = session.get(GroupRow, group_id)
            if not group:
                return False
            expense_ids = select(ExpenseRow.id).where(ExpenseRow.group_id == group_id)
            session.query(ExpenseParticipantRow).filter(
                ExpenseParticipantRow.expense_id.in_(expense_ids)
            ).delete(synchronize_session=False)
            for model in (
                ActivityRow,
                ExpenseRow,
                PaymentRow,
                InviteRow,
                BalanceRow,
                PairBalanceRow,
                MemberRow,
            ):
                session.query(model).filter(model.group_id == group_id).delete(
                    synchronize_session=False
                )
            session.delete(group)
            session.commit()
            return True

    # Members

    def add_member(
        self, group_id: int, user_id: int, role: MemberRole = MemberRole.MEMBER
    ) -> MemberRecord:
        now = time.time()
        with self.Session() as session:
            if not session.get(GroupRow, group_id):
                raise NotFoundError("Group not found")
            row = session.execute(
                select(MemberRow).where(
                    MemberRow.group_id == group_id, MemberRow.user_id == user_id
                )
            ).scalar_one_or_none()
            if row and not row.archived:
                raise InvalidRequestError("User is already a member of this group")
            if row:
                row.archived = False
                row.role = role.value
                row.joined_at = now
            else:
                row = MemberRow(
                    group_id=group_id,
                    user_id=user_id,
                    role=role.value,
                    archived=False,
                    joined_at=now,
                )
                session.add(row)
            session.flush()
            self._recalculate(session, group_id)
            session.commit()
            return self._to_member_record(row)

    def get_member(self, group_id: int, user_id: int) -> Optional[MemberRecord]:
        with self.Session() as session:
            row = session.execute(
                select(MemberRow).where(
                    MemberRow.group_id == group_id,
                    MemberRow.user_id == user_id,
                    MemberRow.archived.is_(False),
                )
            ).scalar_one_or_none()
            return self._to_member_record(row) if row else None

    def is_member(self, group_id: int, user_id: int) -> bool:
        return self.get_member(group_id, user_id) is not None

    def list_members(self, group_id: int) -> list[MemberRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(MemberRow)
                .where(MemberRow.group_id == group_id, MemberRow.archived.is_(False))
                .order_by(MemberRow.joined_at, MemberRow.id)
            ).scalars()
            return [self._to_member_record(row) for row in rows]

    def remove_member(self, group_id: int, user_id: int) -> bool:
        with self.Session() as session:
            row = session.execute(
                select(MemberRow).where(
                    MemberRow.group_id == group_id,
                    MemberRow.user_id == user_id,
                    MemberRow.archived.is_(False),
                )
            ).scalar_one_or_none()
            if not row:
                return False
            check_member_settled(
                ledger.compute_pairwise_balances(*self._sources(session, group_id)),
                user_id,
            )
            row.archived = True
            session.flush()
            self._recalculate(session, group_id)
            session.commit()
            return True

    # Invites

    def create_invite(
        self,
        group_id: int,
        created_by: int,
        *,
        expires_at: Optional[float] = None,
        code_length: int = 8,
    ) -> InviteRecord:
        with self.Session() as session:
            code = generate_invite_code(code_length)
            while session.execute(
                select(InviteRow.id).where(InviteRow.invite_code == code)
            ).first():
                code = generate_invite_code(code_length)
            row = InviteRow(
                group_id=group_id,
                invite_code=code,
                created_by=created_by,
                active=True,
                expires_at=expires_at,
                created_at=time.time(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_invite_record(row)

    def get_invite(self, invite_id: int) -> Optional[InviteRecord]:
        with self.Session() as session:
            row = session.get(InviteRow, invite_id)
            return self._to_invite_record(row) if row else None

    def get_invite_by_code(self, invite_code: str) -> Optional[InviteRecord]:
        with self.Session() as session:
            row = session.execute(
                select(InviteRow).where(InviteRow.invite_code == invite_code)
            ).scalar_one_or_none()
            return self._to_invite_record(row) if row else None

    def list_invites(self, group_id: int) -> list[InviteRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(InviteRow)
                .where(InviteRow.group_id == group_id)
                .order_by(InviteRow.created_at, InviteRow.id)
            ).scalars()
            return [self._to_invite_record(row) for row in rows]

    def deactivate_invite(self, invite_id: int) -> bool:
        with self.Session() as session:
            row = session.get(InviteRow, invite_id)
            if not row:
                return False
            row.active = False
            session.commit()
            return True

    # Expenses

    def create_expense(
        self,
        *,
        group_id: int,
        title: str,
        total_amount: Decimal,
        paid_by: int,
        participants: Sequence[tuple[int, Decimal]],
        date: Optional[date_type] = None,
        notes: Optional[str] = None,
    ) -> ExpenseRecord:
        total_amount = ledger.to_money(total_amount)
        ledger.validate_participants(total_amount, participants)
        now = time.time()
        with self.Session() as session:
            if not session.get(GroupRow, group_id):
                raise NotFoundError("Group not found")
            row = ExpenseRow(
                group_id=group_id,
                title=title,
                total_amount=total_amount,
                paid_by=paid_by,
                date=date or date_type.today(),
                notes=notes,
                created_at=now,
                updated_at=now,
            )
            row.participants = [
                ExpenseParticipantRow(user_id=uid, amount_owed=ledger.to_money(amount))
                for uid, amount in participants
            ]
            session.add(row)
            session.flush()
            self._recalculate(session, group_id)
            session.commit()
            return self._to_expense_record(row)

    def get_expense(self, expense_id: int) -> Optional[ExpenseRecord]:
        with self.Session() as session:
            row = session.get(ExpenseRow, expense_id)
            return self._to_expense_record(row) if row else None

    def list_expenses(
        self, group_id: int, limit: Optional[int] = None, offset: int = 0
    ) -> list[ExpenseRecord]:
        stmt = (
            select(ExpenseRow)
            .where(ExpenseRow.group_id == group_id)
            .order_by(ExpenseRow.date.desc(), ExpenseRow.id.desc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.Session() as session:
            return [self._to_expense_record(row) for row in session.execute(stmt).scalars()]

    def count_expenses(self, group_id: int) -> int:
        with self.Session() as session:
            return session.execute(
                select(func.count(ExpenseRow.id)).where(ExpenseRow.group_id == group_id)
            ).scalar_one()

    def update_expense(
        self,
        expense_id: int,
        *,
        title: Optional[str] = None,
        total_amount: Optional[Decimal] = None,
        paid_by: Optional[int] = None,
        date: Optional[date_type] = None,
        notes: Optional[str] = None,
        participants: Optional[Sequence[tuple[int, Decimal]]] = None,
    ) -> ExpenseRecord:
        with self.Session() as session:
            row = session.get(ExpenseRow, expense_id)
            if not row:
                raise NotFoundError("Expense not found")
            new_total = (
                ledger.to_money(total_amount)
                if total_amount is not None
                else ledger.to_money(row.total_amount)
            )
            if participants is not None:
                ledger.validate_participants(new_total, participants)
                row.participants.clear()
                session.flush()
                row.participants.extend(
                    ExpenseParticipantRow(user_id=uid, amount_owed=ledger.to_money(amount))
                    for uid, amount in participants
                )
            else:
                ledger.validate_participants(
                    new_total, [(p.user_id, p.amount_owed) for p in row.participants]
                )
            row.total_amount = new_total
            if title is not None:
                row.title = title
            if paid_by is not None:
                row.paid_by = paid_by
            if date is not None:
                row.date = date
            if notes is not None:
                row.notes = notes
            row.updated_at = time.time()
            session.flush()
            self._recalculate(session, row.group_id)
            session.commit()
            return self._to_expense_record(row)

    def delete_expense(self, expense_id: int) -> bool:
        with self.Session() as session:
            row = session.get(ExpenseRow, expense_id)
            if not row:
                return False
            group_id = row.group_id
            session.query(ActivityRow).filter(ActivityRow.expense_id == expense_id).update(
                {ActivityRow.expense_id: None}, synchronize_session=False
            )
            session.delete(row)
            session.flush()
            self._recalculate(session, group_id)
            session.commit()
            return True

    # Payments

    def create_payment(
        self,
        *,
        group_id: int,
        paid_by: int,
        paid_to: int,
        amount: Decimal,
        date: Optional[date_type] = None,
        note: Optional[str] = None,
    ) -> PaymentRecord:
        now = time.time()
        with self.Session() as session:
            if not session.get(GroupRow, group_id):
                raise NotFoundError("Group not found")
            row = PaymentRow(
                group_id=group_id,
                paid_by=paid_by,
                paid_to=paid_to,
                amount=ledger.validate_payment_amount(amount),
                date=date or date_type.today(),
                note=note,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._recalculate(session, group_id)
            session.commit()
            return self._to_payment_record(row)

    def get_payment(self, payment_id: int) -> Optional[PaymentRecord]:
        with self.Session() as session:
            row = session.get(PaymentRow, payment_id)
            return self._to_payment_record(row) if row else None

    def list_payments(self, group_id: int) -> list[PaymentRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(PaymentRow)
                .where(PaymentRow.group_id == group_id)
                .order_by(PaymentRow.date.desc(), PaymentRow.id.desc())
            ).scalars()
            return [self._to_payment_record(row) for row in rows]

    def update_payment(
        self,
        payment_id: int,
        *,
        amount: Optional[Decimal] = None,
        paid_by: Optional[int] = None,
        paid_to: Optional[int] = None,
        date: Optional[date_type] = None,
        note: Optional[str] = None,
    ) -> PaymentRecord:
        with self.Session() as session:
            row = session.get(PaymentRow, payment_id)
            if not row:
                raise NotFoundError("Payment not found")
            if amount is not None:
                row.amount = ledger.validate_payment_amount(amount)
            if paid_by is not None:
                row.paid_by = paid_by
            if paid_to is not None:
                row.paid_to = paid_to
            if date is not None:
                row.date = date
            if note is not None:
                row.note = note
            row.updated_at = time.time()
            session.flush()
            self._recalculate(session, row.group_id)
            session.commit()
            return self._to_payment_record(row)

    def delete_payment(self, payment_id: int) -> bool:
        with self.Session() as session:
            row = session.get(PaymentRow, payment_id)
            if not row:
                return False
            group_id = row.group_id
            session.query(ActivityRow).filter(ActivityRow.payment_id == payment_id).update(
                {ActivityRow.payment_id: None}, synchronize_session=False
            )
            session.delete(row)
            session.flush()
            self._recalculate(session, group_id)
            session.commit()
            return True

    # Activity

    def log_activity(
        self,
        *,
        user_id: int,
        action_type: ActivityType,
        group_id: Optional[int] = None,
        expense_id: Optional[int] = None,
        payment_id: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> ActivityRecord:
        with self.Session() as session:
            row = ActivityRow(
                user_id=user_id,
                action_type=action_type.value,
                group_id=group_id,
                expense_id=expense_id,
                payment_id=payment_id,
                data=metadata,
                created_at=time.time(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_activity_record(row)

    def list_activity_for_user(
        self, user_id: int, limit: Optional[int] = 20
    ) -> list[ActivityRecord]:
        group_ids = select(MemberRow.group_id).where(
            MemberRow.user_id == user_id, MemberRow.archived.is_(False)
        )
        stmt = (
            select(ActivityRow)
            .where(or_(ActivityRow.user_id == user_id, ActivityRow.group_id.in_(group_ids)))
            .order_by(ActivityRow.created_at.desc(), ActivityRow.id.desc())
            .limit(limit)
        )
        with self.Session() as session:
            return [self._to_activity_record(row) for row in session.execute(stmt).scalars()]

    def list_activity_for_group(self, group_id: int) -> list[ActivityRecord]:
        stmt = (
            select(ActivityRow)
            .where(ActivityRow.group_id == group_id)
            .order_by(ActivityRow.created_at.desc(), ActivityRow.id.desc())
        )
        with self.Session() as session:
            return [self._to_activity_record(row) for row in session.execute(stmt).scalars()]

    # Balances

    def _sources(self, session: Session, group_id: int):
        member_ids = list(
            session.execute(
                select(MemberRow.user_id).where(
                    MemberRow.group_id == group_id, MemberRow.archived.is_(False)
                )
            ).scalars()
        )
        expenses = [
            self._to_expense_record(row)
            for row in session.execute(
                select(ExpenseRow).where(ExpenseRow.group_id == group_id)
            ).scalars()
        ]
        payments = [
            self._to_payment_record(row)
            for row in session.execute(
                select(PaymentRow).where(PaymentRow.group_id == group_id)
            ).scalars()
        ]
        return member_ids, expenses, payments

    def _recalculate(self, session: Session, group_id: int) -> Dict[int, Decimal]:
        # Writers to the same group queue here, so each one reads the sources
        # committed by the writer before it.
        session.execute(group_lock_statement(group_id))
        member_ids, expenses, payments = self._sources(session, group_id)
        balances = ledger.compute_group_balances(member_ids, expenses, payments)
        pairs = ledger.compute_pairwise_balances(member_ids, expenses, payments)
        keep = cached_user_ids(member_ids, balances)

        session.query(BalanceRow).filter(BalanceRow.group_id == group_id).delete(
            synchronize_session=False
        )
        session.query(PairBalanceRow).filter(PairBalanceRow.group_id == group_id).delete(
            synchronize_session=False
        )
        now = time.time()
        session.add_all(
            BalanceRow(
                group_id=group_id,
                user_id=user_id,
                balance_amount=balances.get(user_id, ledger.ZERO),
                last_updated=now,
            )
            for user_id in sorted(keep)
        )
        session.add_all(
            PairBalanceRow(
                group_id=group_id,
                from_user_id=from_id,
                to_user_id=to_id,
                balance_amount=amount,
                last_updated=now,
            )
            for (from_id, to_id), amount in pairs.items()
            if from_id in keep and to_id in keep
        )
        return {uid: amount for uid, amount in balances.items() if uid in keep}

    def compute_group_balances(self, group_id: int) -> Dict[int, Decimal]:
        with self.Session() as session:
            return ledger.compute_group_balances(*self._sources(session, group_id))

    def compute_pair_balances(self, group_id: int) -> Dict[tuple[int, int], Decimal]:
        with self.Session() as session:
            return ledger.compute_pairwise_balances(*self._sources(session, group_id))

    def recalculate_group_balances(self, group_id: int) -> Dict[int, Decimal]:
        with self.Session() as session:
            if not session.get(GroupRow, group_id):
                raise NotFoundError("Group not found")
            balances = self._recalculate(session, group_id)
            session.commit()
            return balances

    def get_cached_balances(self, group_id: int) -> list[BalanceRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(BalanceRow)
                .where(BalanceRow.group_id == group_id)
                .order_by(BalanceRow.user_id)
            ).scalars()
            return [
                BalanceRecord(
                    group_id=row.group_id,
                    user_id=row.user_id,
                    balance_amount=ledger.to_money(row.balance_amount),
                    last_updated=row.last_updated,
                )
                for row in rows
            ]

    def get_cached_balance(self, user_id: int, group_id: int) -> Decimal:
        with self.Session() as session:
            row = session.get(BalanceRow, (group_id, user_id))
            return ledger.to_money(row.balance_amount) if row else ledger.ZERO

    def _pair_records(self, session: Session, stmt) -> list[PairBalanceRecord]:
        return [
            PairBalanceRecord(
                group_id=row.group_id,
                from_user_id=row.from_user_id,
                to_user_id=row.to_user_id,
                balance_amount=ledger.to_money(row.balance_amount),
                last_updated=row.last_updated,
            )
            for row in session.execute(stmt).scalars()
        ]

    def get_pair_balances(self, group_id: int, user_id: int) -> list[PairBalanceRecord]:
        stmt = (
            select(PairBalanceRow)
            .where(
                PairBalanceRow.group_id == group_id,
                PairBalanceRow.from_user_id == user_id,
            )
            .order_by(PairBalanceRow.to_user_id)
        )
        with self.Session() as session:
            return self._pair_records(session, stmt)

    def get_all_pair_balances_for_user(self, user_id: int) -> list[PairBalanceRecord]:
        stmt = (
            select(PairBalanceRow)
            .where(PairBalanceRow.from_user_id == user_id)
            .order_by(PairBalanceRow.group_id, PairBalanceRow.to_user_id)
        )
        with self.Session() as session:
            return self._pair_records(session, stmt)


Base = declarative_base()

Money = Numeric(12, 2)


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    username = Column(String, nullable=False, unique=True)
    firebase_uid = Column(String, nullable=True, unique=True, index=True)
    avatar_url = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class GroupRow(Base):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class MemberRow(Base):
    __tablename__ = "group_members"
    __table_args__ = (UniqueConstraint("group_id", "user_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("groups.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String, nullable=False, default=MemberRole.MEMBER.value)
    archived = Column(Boolean, nullable=False, default=False)
    joined_at = Column(Float, nullable=False)


class InviteRow(Base):
    __tablename__ = "group_invites"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("groups.id"), nullable=False, index=True)
    invite_code = Column(String, nullable=False, unique=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class ExpenseRow(Base):
    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("groups.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    total_amount = Column(Money, nullable=False)
    paid_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    date = Column(Date, nullable=False)
    notes = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    participants = relationship(
        "ExpenseParticipantRow",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ExpenseParticipantRow.user_id",
    )


class ExpenseParticipantRow(Base):
    __tablename__ = "expense_participants"

    expense_id = Column(Integer, ForeignKey("expenses.id"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    amount_owed = Column(Money, nullable=False)


class PaymentRow(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("groups.id"), nullable=False, index=True)
    paid_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    paid_to = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Money, nullable=False)
    date = Column(Date, nullable=False)
    note = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class ActivityRow(Base):
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    action_type = Column(String, nullable=False)
    group_id = Column(Integer, ForeignKey("groups.id"), nullable=True, index=True)
    # Plain ids; nulled when the expense or payment is deleted.
    expense_id = Column(Integer, nullable=True)
    payment_id = Column(Integer, nullable=True)
    data = Column("metadata", JSON, nullable=True)
    created_at = Column(Float, nullable=False)


class BalanceRow(Base):
    __tablename__ = "user_balances"

    group_id = Column(Integer, ForeignKey("groups.id"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    balance_amount = Column(Money, nullable=False)
    last_updated = Column(Float, nullable=False)


class PairBalanceRow(Base):
    __tablename__ = "user_balances_between_users"

    group_id = Column(Integer, ForeignKey("groups.id"), primary_key=True)
    from_user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    to_user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    balance_amount = Column(Money, nullable=False)
    last_updated = Column(Float, nullable=False)

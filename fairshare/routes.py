"""
HTTP routes for the FairShare API.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Iterable, Literal, Optional, Sequence

from fastapi import APIRouter, Depends, Query, Response

from fairshare import ledger
from fairshare.config import get_settings
from fairshare.db import (
    DbClient,
    ExpenseRecord,
    GroupRecord,
    PaymentRecord,
    UserRecord,
)
from fairshare.dependencies import (
    get_current_user,
    get_db_client,
    get_queue_client,
    require_admin,
)
from fairshare.errors import (
    InvalidRequestError,
    InviteUnavailableError,
    NotFoundError,
    OutstandingBalanceError,
    PermissionDeniedError,
)
from fairshare.queue import JobQueue
from fairshare.schemas import (
    ActivityListResponse,
    ActivityResponse,
    CounterpartyAmount,
    ExpenseCreateRequest,
    ExpenseListResponse,
    ExpenseResponse,
    ExpenseUpdateRequest,
    GroupBalanceEntry,
    GroupCreateRequest,
    GroupListResponse,
    GroupResponse,
    GroupSummaryMember,
    GroupSummaryResponse,
    GroupUpdateRequest,
    HealthResponse,
    InviteGroupInfo,
    InviteRequest,
    InviteResponse,
    InviterInfo,
    InviteVerifyResponse,
    MemberResponse,
    MessageResponse,
    PairBalanceEntry,
    ParticipantResponse,
    ParticipantShare,
    PaymentCreateRequest,
    PaymentListResponse,
    PaymentResponse,
    PaymentUpdateRequest,
    RefreshBalancesResponse,
    SettlementResponse,
    UserBalancesResponse,
    UserBrief,
    UserResponse,
    UserUpdateRequest,
)
from fairshare.types import (
    EXPENSE_ACTIVITY_TYPES,
    PAYMENT_ACTIVITY_TYPES,
    ActivityType,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# Lookups and permission checks


def _require_group(db: DbClient, group_id: int) -> GroupRecord:
    group = db.get_group(group_id)
    if not group:
        raise NotFoundError("Group not found")
    return group


def _require_member(db: DbClient, group_id: int, user: UserRecord) -> None:
    if not db.is_member(group_id, user.id):
        raise PermissionDeniedError("You are not a member of this group")


def _require_creator(group: GroupRecord, user: UserRecord, action: str) -> None:
    if group.created_by != user.id:
        raise PermissionDeniedError(f"Only the group creator can {action}")


def _require_expense(db: DbClient, expense_id: int) -> ExpenseRecord:
    expense = db.get_expense(expense_id)
    if not expense:
        raise NotFoundError("Expense not found")
    return expense


def _require_payment(db: DbClient, payment_id: int) -> PaymentRecord:
    payment = db.get_payment(payment_id)
    if not payment:
        raise NotFoundError("Payment not found")
    return payment


def _active_member_ids(db: DbClient, group_id: int) -> list[int]:
    return [member.user_id for member in db.list_members(group_id)]


def _page(offset: int, limit: int) -> int:
    return offset // limit + 1


# Response builders


def _brief(user: Optional[UserRecord]) -> Optional[UserBrief]:
    if user is None:
        return None
    return UserBrief(
        id=user.id, name=user.name, username=user.username, avatar_url=user.avatar_url
    )


def _user_response(user: UserRecord) -> UserResponse:
    return UserResponse(**user.as_dict())


def _group_response(
    db: DbClient, group: GroupRecord, balance: Optional[Decimal] = None
) -> GroupResponse:
    return GroupResponse(
        **group.as_dict(),
        member_count=len(db.list_members(group.id)),
        balance=balance,
    )


def _expense_response(
    expense: ExpenseRecord, users: dict[int, UserRecord]
) -> ExpenseResponse:
    return ExpenseResponse(
        id=expense.id,
        group_id=expense.group_id,
        title=expense.title,
        total_amount=expense.total_amount,
        paid_by=expense.paid_by,
        paid_by_user=_brief(users.get(expense.paid_by)),
        date=expense.date,
        notes=expense.notes,
        participants=[
            ParticipantResponse(
                user_id=p.user_id,
                amount_owed=p.amount_owed,
                user=_brief(users.get(p.user_id)),
            )
            for p in expense.participants
        ],
        created_at=expense.created_at,
        updated_at=expense.updated_at,
    )


def _expense_user_ids(expenses: Iterable[ExpenseRecord]) -> set[int]:
    ids: set[int] = set()
    for expense in expenses:
        ids.add(expense.paid_by)
        ids.update(p.user_id for p in expense.participants)
    return ids


def _payment_response(
    payment: PaymentRecord, users: dict[int, UserRecord]
) -> PaymentResponse:
    return PaymentResponse(
        **payment.as_dict(),
        paid_by_user=_brief(users.get(payment.paid_by)),
        paid_to_user=_brief(users.get(payment.paid_to)),
    )


def _balance_entries(
    db: DbClient, balances: dict[int, Decimal], user_ids: Sequence[int]
) -> list[GroupBalanceEntry]:
    users = db.get_users(user_ids)
    return [
        GroupBalanceEntry(
            user_id=user_id,
            user=_brief(users.get(user_id)),
            balance=balances.get(user_id, ledger.ZERO),
        )
        for user_id in user_ids
    ]


def _activity_responses(db: DbClient, entries) -> list[ActivityResponse]:
    users = db.get_users(entry.user_id for entry in entries)
    group_names: dict[int, str] = {}
    results = []
    for entry in entries:
        metadata = entry.metadata or {}
        group_name = None
        if entry.group_id is not None:
            if entry.group_id not in group_names:
                group = db.get_group(entry.group_id)
                group_names[entry.group_id] = group.name if group else ""
            group_name = group_names[entry.group_id] or None

        expense_title = metadata.get("title")
        if entry.expense_id is not None:
            expense = db.get_expense(entry.expense_id)
            if expense:
                expense_title = expense.title

        payment_amount = None
        if entry.action_type in PAYMENT_ACTIVITY_TYPES:
            payment = db.get_payment(entry.payment_id) if entry.payment_id else None
            if payment:
                payment_amount = payment.amount
            elif metadata.get("amount") is not None:
                payment_amount = ledger.to_money(metadata["amount"])

        user = users.get(entry.user_id)
        results.append(
            ActivityResponse(
                **entry.as_dict(),
                user_name=user.name if user else None,
                group_name=group_name,
                expense_title=expense_title,
                payment_amount=payment_amount,
            )
        )
    return results


def _resolve_shares(
    total: Decimal,
    participants: Optional[list[ParticipantShare]],
    split_equally_among: Optional[list[int]],
    default_user_ids: Sequence[int],
) -> list[tuple[int, Decimal]]:
    if participants is not None and split_equally_among is not None:
        raise InvalidRequestError(
            "Provide either participants or split_equally_among, not both"
        )
    if participants is not None:
        return [(p.user_id, ledger.to_money(p.amount_owed)) for p in participants]
    user_ids = split_equally_among if split_equally_among is not None else default_user_ids
    return ledger.split_equally(total, list(user_ids))


def _check_allowed(user_ids: Iterable[int], allowed: set[int], role: str) -> None:
    for user_id in user_ids:
        if user_id not in allowed:
            raise InvalidRequestError(f"{role} {user_id} is not a member of this group")


def _check_group_settled(db: DbClient, group_id: int) -> None:
    pairs = db.compute_pair_balances(group_id)
    if any(not ledger.is_settled(amount) for amount in pairs.values()):
        raise OutstandingBalanceError(
            "Group has outstanding balances. Settle all debts before deleting it."
        )


# Health


@router.get("/health", response_model=HealthResponse)
def health(
    db: DbClient = Depends(get_db_client),
    queue: JobQueue = Depends(get_queue_client),
):
    database_ok = db.ping()
    queue_ok = queue.ping()
    return HealthResponse(
        status="ok" if database_ok and queue_ok else "degraded",
        database="ok" if database_ok else "unavailable",
        queue="ok" if queue_ok else "unavailable",
        timestamp=time.time(),
        version=get_settings().version,
    )


# Users


@router.get("/user", response_model=UserResponse)
def get_user(user: UserRecord = Depends(get_current_user)):
    return _user_response(user)


@router.put("/user", response_model=UserResponse)
def update_user(
    payload: UserUpdateRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise InvalidRequestError("No fields to update")
    updated = db.update_user(user.id, **changes)
    logger.info("User %s updated profile fields %s", user.id, sorted(changes))
    return _user_response(updated)


# Groups


@router.post("/groups", response_model=GroupResponse, status_code=201)
def create_group(
    payload: GroupCreateRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    group = db.create_group(
        name=payload.name, description=payload.description, created_by=user.id
    )
    db.log_activity(
        user_id=user.id,
        action_type=ActivityType.CREATE_GROUP,
        group_id=group.id,
        metadata={"group_name": group.name},
    )
    logger.info("User %s created group %s", user.id, group.id)
    return _group_response(db, group, ledger.ZERO)


@router.get("/groups", response_model=GroupListResponse)
def list_groups(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    groups = db.list_groups_for_user(user.id, limit=limit, offset=offset)
    total = db.count_groups_for_user(user.id)
    return GroupListResponse(
        groups=[
            _group_response(db, group, db.get_cached_balance(user.id, group.id))
            for group in groups
        ],
        total_count=total,
        has_more=offset + len(groups) < total,
    )


# Literal paths under /groups are registered before /groups/{group_id}/...


@router.post("/groups/join/{invite_code}", response_model=GroupResponse)
def join_group(
    invite_code: str,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    invite = db.get_invite_by_code(invite_code)
    if not invite:
        raise NotFoundError("Invite not found")
    if not invite.is_usable():
        raise InviteUnavailableError("This invite link has expired or been deactivated")
    if db.is_member(invite.group_id, user.id):
        raise InvalidRequestError("You are already a member of this group")
    db.add_member(invite.group_id, user.id)
    db.log_activity(
        user_id=user.id,
        action_type=ActivityType.JOIN_VIA_INVITE,
        group_id=invite.group_id,
        metadata={"invite_code": invite.invite_code},
    )
    logger.info("User %s joined group %s via invite %s", user.id, invite.group_id, invite.id)
    group = _require_group(db, invite.group_id)
    return _group_response(db, group, db.get_cached_balance(user.id, group.id))


@router.post("/groups/invites/{invite_id}/deactivate", response_model=MessageResponse)
def deactivate_invite(
    invite_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    invite = db.get_invite(invite_id)
    if not invite:
        raise NotFoundError("Invite not found")
    _require_member(db, invite.group_id, user)
    db.deactivate_invite(invite_id)
    logger.info("User %s deactivated invite %s", user.id, invite_id)
    return MessageResponse(message="Invite deactivated")


@router.get("/groups/{group_id}", response_model=GroupResponse)
def get_group(
    group_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    group = _require_group(db, group_id)
    _require_member(db, group_id, user)
    return _group_response(db, group)


@router.get("/groups/{group_id}/summary", response_model=GroupSummaryResponse)
def get_group_summary(
    group_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    group = _require_group(db, group_id)
    _require_member(db, group_id, user)
    member_ids = _active_member_ids(db, group_id)
    users = db.get_users(member_ids)
    balances = db.compute_group_balances(group_id)
    return GroupSummaryResponse(
        id=group.id,
        name=group.name,
        created_by=group.created_by,
        created_at=group.created_at,
        members=[
            GroupSummaryMember(user_id=uid, name=users[uid].name)
            for uid in member_ids
            if uid in users
        ],
        member_count=len(member_ids),
        user_balance=balances.get(user.id, ledger.ZERO),
    )


@router.patch("/groups/{group_id}", response_model=GroupResponse)
def update_group(
    group_id: int,
    payload: GroupUpdateRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    group = _require_group(db, group_id)
    _require_creator(group, user, "edit this group")
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise InvalidRequestError("No fields to update")
    updated = db.update_group(group_id, **changes)
    db.log_activity(
        user_id=user.id,
        action_type=ActivityType.UPDATE_GROUP,
        group_id=group_id,
        metadata={"previous_name": group.name, "new_name": updated.name},
    )
    logger.info("User %s updated group %s", user.id, group_id)
    return _group_response(db, updated)


@router.delete("/groups/{group_id}", response_model=MessageResponse)
def delete_group(
    group_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    group = _require_group(db, group_id)
    _require_creator(group, user, "delete this group")
    _check_group_settled(db, group_id)
    db.delete_group(group_id)
    logger.info("User %s deleted group %s", user.id, group_id)
    return MessageResponse(message="Group deleted")


@router.delete("/admin/groups/{group_id}/force-delete", response_model=MessageResponse)
def force_delete_group(
    group_id: int,
    admin: UserRecord = Depends(require_admin),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    db.delete_group(group_id)
    logger.warning("Admin %s force-deleted group %s", admin.id, group_id)
    return MessageResponse(message="Group deleted")


# Members


@router.get("/groups/{group_id}/members", response_model=list[MemberResponse])
def list_members(
    group_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_member(db, group_id, user)
    members = db.list_members(group_id)
    users = db.get_users(m.user_id for m in members)
    return [
        MemberResponse(
            id=m.id,
            user_id=m.user_id,
            role=m.role.value,
            joined_at=m.joined_at,
            user=_brief(users.get(m.user_id)),
        )
        for m in members
    ]


@router.delete("/groups/{group_id}/members/{member_user_id}", response_model=MessageResponse)
def remove_member(
    group_id: int,
    member_user_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    group = _require_group(db, group_id)
    _require_creator(group, user, "remove members")
    if member_user_id == group.created_by:
        raise InvalidRequestError("The group creator cannot be removed")
    removed_user = db.get_user(member_user_id)
    if not db.remove_member(group_id, member_user_id):
        raise NotFoundError("Member not found")
    db.log_activity(
        user_id=user.id,
        action_type=ActivityType.REMOVE_MEMBER,
        group_id=group_id,
        metadata={
            "removed_user_id": member_user_id,
            "removed_user_name": removed_user.name if removed_user else None,
        },
    )
    logger.info("User %s removed user %s from group %s", user.id, member_user_id, group_id)
    return MessageResponse(message="Member removed")


@router.post("/groups/{group_id}/leave", response_model=MessageResponse)
def leave_group(
    group_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    group = _require_group(db, group_id)
    _require_member(db, group_id, user)
    if group.created_by == user.id:
        raise InvalidRequestError("The group creator cannot leave the group")
    db.remove_member(group_id, user.id)
    db.log_activity(
        user_id=user.id,
        action_type=ActivityType.LEAVE_GROUP,
        group_id=group_id,
        metadata={"group_name": group.name},
    )
    logger.info("User %s left group %s", user.id, group_id)
    return MessageResponse(message="You have left the group")


# Invites


@router.post("/groups/{group_id}/invite")
def invite_to_group(
    group_id: int,
    response: Response,
    payload: Optional[InviteRequest] = None,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    """
    Invite by email (registered users are added directly) or return a shareable invite link.
    """
    _require_group(db, group_id)
    _require_member(db, group_id, user)
    payload = payload or InviteRequest()

    if payload.email:
        invitee = db.get_user_by_email(payload.email)
        if not invitee:
            return MessageResponse(
                message=f"No FairShare account found for {payload.email}. "
                "Share an invite link instead."
            )
        member = db.add_member(group_id, invitee.id)
        db.log_activity(
            user_id=user.id,
            action_type=ActivityType.ADD_MEMBER,
            group_id=group_id,
            metadata={"added_user_id": invitee.id, "added_user_name": invitee.name},
        )
        logger.info("User %s added user %s to group %s", user.id, invitee.id, group_id)
        response.status_code = 201
        return MemberResponse(
            id=member.id,
            user_id=member.user_id,
            role=member.role.value,
            joined_at=member.joined_at,
            user=_brief(invitee),
        )

    for invite in db.list_invites(group_id):
        if invite.is_usable():
            return InviteResponse(**invite.as_dict())

    invite = db.create_invite(
        group_id,
        user.id,
        expires_at=payload.expires_at.timestamp() if payload.expires_at else None,
        code_length=get_settings().invite_code_length,
    )
    db.log_activity(
        user_id=user.id,
        action_type=ActivityType.CREATE_INVITE_LINK,
        group_id=group_id,
        metadata={"invite_code": invite.invite_code},
    )
    logger.info("User %s created invite %s for group %s", user.id, invite.id, group_id)
    response.status_code = 201
    return InviteResponse(**invite.as_dict())


@router.get("/groups/{group_id}/invites", response_model=list[InviteResponse])
def list_invites(
    group_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_member(db, group_id, user)
    return [
        InviteResponse(**invite.as_dict())
        for invite in db.list_invites(group_id)
        if invite.is_usable()
    ]


@router.get("/invites/{invite_code}/verify", response_model=InviteVerifyResponse)
def verify_invite(invite_code: str, db: DbClient = Depends(get_db_client)):
    invite = db.get_invite_by_code(invite_code)
    if not invite:
        raise NotFoundError("Invite not found")
    if not invite.is_usable():
        raise InviteUnavailableError("This invite link has expired or been deactivated")
    group = _require_group(db, invite.group_id)
    inviter = db.get_user(invite.created_by)
    return InviteVerifyResponse(
        valid=True,
        group=InviteGroupInfo(name=group.name, member_count=len(db.list_members(group.id))),
        invited_by=InviterInfo(name=inviter.name) if inviter else None,
    )


# Expenses


@router.post("/expenses", response_model=ExpenseResponse, status_code=201)
def create_expense(
    payload: ExpenseCreateRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, payload.group_id)
    _require_member(db, payload.group_id, user)
    member_ids = _active_member_ids(db, payload.group_id)
    allowed = set(member_ids)

    paid_by = payload.paid_by if payload.paid_by is not None else user.id
    _check_allowed([paid_by], allowed, "Payer")
    total = ledger.to_money(payload.total_amount)
    shares = _resolve_shares(
        total, payload.participants, payload.split_equally_among, member_ids
    )
    _check_allowed((uid for uid, _ in shares), allowed, "Participant")

    expense = db.create_expense(
        group_id=payload.group_id,
        title=payload.title,
        total_amount=total,
        paid_by=paid_by,
        participants=shares,
        date=payload.date,
        notes=payload.notes,
    )
    db.log_activity(
        user_id=user.id,
        action_type=ActivityType.ADD_EXPENSE,
        group_id=expense.group_id,
        expense_id=expense.id,
        metadata={"title": expense.title, "amount": str(expense.total_amount)},
    )
    logger.info(
        "User %s added expense %s (%s) to group %s",
        user.id,
        expense.id,
        expense.total_amount,
        expense.group_id,
    )
    return _expense_response(expense, db.get_users(_expense_user_ids([expense])))


@router.get("/groups/{group_id}/expenses", response_model=ExpenseListResponse)
def list_expenses(
    group_id: int,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_member(db, group_id, user)
    expenses = db.list_expenses(group_id, limit=limit, offset=offset)
    total = db.count_expenses(group_id)
    users = db.get_users(_expense_user_ids(expenses))
    return ExpenseListResponse(
        expenses=[_expense_response(expense, users) for expense in expenses],
        total_count=total,
        has_more=offset + len(expenses) < total,
        page=_page(offset, limit),
    )


@router.get("/expenses/{expense_id}", response_model=ExpenseResponse)
def get_expense(
    expense_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    expense = _require_expense(db, expense_id)
    _require_member(db, expense.group_id, user)
    return _expense_response(expense, db.get_users(_expense_user_ids([expense])))


@router.patch("/expenses/{expense_id}", response_model=ExpenseResponse)
def update_expense(
    expense_id: int,
    payload: ExpenseUpdateRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    expense = _require_expense(db, expense_id)
    _require_member(db, expense.group_id, user)
    if not payload.model_dump(exclude_unset=True):
        raise InvalidRequestError("No fields to update")

    current_ids = [p.user_id for p in expense.participants]
    # Former members already on the expense may stay on it.
    allowed = set(_active_member_ids(db, expense.group_id)) | set(current_ids)
    if payload.paid_by is not None:
        _check_allowed([payload.paid_by], allowed | {expense.paid_by}, "Payer")

    total = (
        ledger.to_money(payload.total_amount)
        if payload.total_amount is not None
        else expense.total_amount
    )
    shares = None
    if payload.participants is not None or payload.split_equally_among is not None:
        shares = _resolve_shares(
            total, payload.participants, payload.split_equally_among, current_ids
        )
        _check_allowed((uid for uid, _ in shares), allowed, "Participant")
    elif total != expense.total_amount:
        shares = ledger.split_equally(total, current_ids)

    updated = db.update_expense(
        expense_id,
        title=payload.title,
        total_amount=total,
        paid_by=payload.paid_by,
        date=payload.date,
        notes=payload.notes,
        participants=shares,
    )
    db.log_activity(
        user_id=user.id,
        action_type=ActivityType.UPDATE_EXPENSE,
        group_id=updated.group_id,
        expense_id=updated.id,
        metadata={"title": updated.title, "amount": str(updated.total_amount)},
    )
    logger.info("User %s updated expense %s", user.id, expense_id)
    return _expense_response(updated, db.get_users(_expense_user_ids([updated])))


@router.delete("/expenses/{expense_id}", response_model=MessageResponse)
def delete_expense(
    expense_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    expense = _require_expense(db, expense_id)
    _require_member(db, expense.group_id, user)
    db.delete_expense(expense_id)
    db.log_activity(
        user_id=user.id,
        action_type=ActivityType.DELETE_EXPENSE,
        group_id=expense.group_id,
        metadata={
            "deleted_expense_id": expense.id,
            "title": expense.title,
            "amount": str(expense.total_amount),
        },
    )
    logger.info("User %s deleted expense %s", user.id, expense_id)
    return MessageResponse(message="Expense deleted")


# Payments


@router.post("/payments", response_model=PaymentResponse, status_code=201)
def create_payment(
    payload: PaymentCreateRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, payload.group_id)
    _require_member(db, payload.group_id, user)
    paid_by = payload.paid_by if payload.paid_by is not None else user.id
    if paid_by == payload.paid_to:
        raise InvalidRequestError("Payer and recipient must be different users")
    _check_allowed(
        [paid_by, payload.paid_to], set(_active_member_ids(db, payload.group_id)), "User"
    )

    payment = db.create_payment(
        group_id=payload.group_id,
        paid_by=paid_by,
        paid_to=payload.paid_to,
        amount=ledger.validate_payment_amount(payload.amount),
        date=payload.date,
        note=payload.note,
    )
    db.log_activity(
        user_id=user.id,
        action_type=ActivityType.RECORD_PAYMENT,
        group_id=payment.group_id,
        payment_id=payment.id,
        metadata={
            "amount": str(payment.amount),
            "paid_by": payment.paid_by,
            "paid_to": payment.paid_to,
        },
    )
    logger.info(
        "User %s recorded payment %s (%s) in group %s",
        user.id,
        payment.id,
        payment.amount,
        payment.group_id,
    )
    return _payment_response(payment, db.get_users([payment.paid_by, payment.paid_to]))


@router.get("/groups/{group_id}/payments", response_model=PaymentListResponse)
def list_payments(
    group_id: int,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_member(db, group_id, user)
    payments = db.list_payments(group_id)
    page = payments[offset : offset + limit]
    users = db.get_users(uid for p in page for uid in (p.paid_by, p.paid_to))
    return PaymentListResponse(
        payments=[_payment_response(p, users) for p in page],
        total_count=len(payments),
        has_more=offset + len(page) < len(payments),
        page=_page(offset, limit),
    )


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(
    payment_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    payment = _require_payment(db, payment_id)
    _require_member(db, payment.group_id, user)
    return _payment_response(payment, db.get_users([payment.paid_by, payment.paid_to]))


def _require_payment_party(payment: PaymentRecord, user: UserRecord, action: str) -> None:
    if user.id not in (payment.paid_by, payment.paid_to):
        raise PermissionDeniedError(
            f"Only the payer or the recipient can {action} this payment"
        )


@router.patch("/payments/{payment_id}", response_model=PaymentResponse)
def update_payment(
    payment_id: int,
    payload: PaymentUpdateRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    payment = _require_payment(db, payment_id)
    _require_payment_party(payment, user, "edit")
    if not payload.model_dump(exclude_unset=True):
        raise InvalidRequestError("No fields to update")

    paid_by = payload.paid_by if payload.paid_by is not None else payment.paid_by
    paid_to = payload.paid_to if payload.paid_to is not None else payment.paid_to
    if paid_by == paid_to:
        raise InvalidRequestError("Payer and recipient must be different users")
    allowed = set(_active_member_ids(db, payment.group_id)) | {
        payment.paid_by,
        payment.paid_to,
    }
    _check_allowed([paid_by, paid_to], allowed, "User")

    updated = db.update_payment(
        payment_id,
        amount=(
            ledger.validate_payment_amount(payload.amount)
            if payload.amount is not None
            else None
        ),
        paid_by=payload.paid_by,
        paid_to=payload.paid_to,
        date=payload.date,
        note=payload.note,
    )
    db.log_activity(
        user_id=user.id,
        action_type=ActivityType.UPDATE_PAYMENT,
        group_id=updated.group_id,
        payment_id=updated.id,
        metadata={
            "amount": str(updated.amount),
            "previous_amount": str(payment.amount),
        },
    )
    logger.info("User %s updated payment %s", user.id, payment_id)
    return _payment_response(updated, db.get_users([updated.paid_by, updated.paid_to]))


@router.delete("/payments/{payment_id}", response_model=MessageResponse)
def delete_payment(
    payment_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    payment = _require_payment(db, payment_id)
    _require_payment_party(payment, user, "delete")
    db.delete_payment(payment_id)
    db.log_activity(
        user_id=user.id,
        action_type=ActivityType.DELETE_PAYMENT,
        group_id=payment.group_id,
        metadata={
            "deleted_payment_id": payment.id,
            "amount": str(payment.amount),
            "paid_by": payment.paid_by,
            "paid_to": payment.paid_to,
        },
    )
    logger.info("User %s deleted payment %s", user.id, payment_id)
    return MessageResponse(message="Payment deleted")


# Activity


@router.get("/activity", response_model=ActivityListResponse)
def list_activity(
    limit: Optional[int] = Query(None, ge=1, le=200),
    activity_type: Optional[Literal["expenses", "payments"]] = Query(None, alias="type"),
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    limit = limit or get_settings().default_activity_limit
    entries = db.list_activity_for_user(user.id, limit=None)
    if activity_type == "expenses":
        entries = [e for e in entries if e.action_type in EXPENSE_ACTIVITY_TYPES]
    elif activity_type == "payments":
        entries = [e for e in entries if e.action_type in PAYMENT_ACTIVITY_TYPES]
    page = entries[:limit]
    return ActivityListResponse(
        activities=_activity_responses(db, page),
        total_count=len(entries),
        has_more=len(entries) > len(page),
    )


@router.get("/groups/{group_id}/activity", response_model=ActivityListResponse)
def list_group_activity(
    group_id: int,
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_member(db, group_id, user)
    entries = db.list_activity_for_group(group_id)
    page = entries[offset : offset + limit]
    return ActivityListResponse(
        activities=_activity_responses(db, page),
        total_count=len(entries),
        has_more=offset + len(page) < len(entries),
    )


# Balances


@router.get("/balances", response_model=UserBalancesResponse)
def get_user_balances(
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    """
    Totals across every group, read from the balance cache.
    """
    pairs = db.get_all_pair_balances_for_user(user.id)
    totals = ledger.summarize_user_totals(
        (pair.to_user_id, pair.balance_amount) for pair in pairs
    )
    users = db.get_users(
        [uid for uid, _ in totals.owed_by] + [uid for uid, _ in totals.owes_to]
    )
    return UserBalancesResponse(
        total_owed=totals.total_owed,
        total_owes=totals.total_owes,
        net_balance=totals.net_balance,
        owed_by=[
            CounterpartyAmount(user_id=uid, user=_brief(users.get(uid)), amount=amount)
            for uid, amount in totals.owed_by
        ],
        owes_to=[
            CounterpartyAmount(user_id=uid, user=_brief(users.get(uid)), amount=amount)
            for uid, amount in totals.owes_to
        ],
    )


@router.get("/groups/{group_id}/balances", response_model=list[GroupBalanceEntry])
def get_group_balances(
    group_id: int,
    response: Response,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_member(db, group_id, user)
    balances = db.compute_group_balances(group_id)
    response.headers["Cache-Control"] = "no-store"
    return _balance_entries(db, balances, _active_member_ids(db, group_id))


@router.get("/groups/{group_id}/balances/me", response_model=list[PairBalanceEntry])
def get_my_group_balances(
    group_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_member(db, group_id, user)
    pairs = [
        pair
        for pair in db.get_pair_balances(group_id, user.id)
        if not ledger.is_settled(pair.balance_amount)
    ]
    users = db.get_users(pair.to_user_id for pair in pairs)
    return [
        PairBalanceEntry(
            other_user_id=pair.to_user_id,
            other_user=_brief(users.get(pair.to_user_id)),
            amount=abs(pair.balance_amount),
            direction="owes" if pair.balance_amount > 0 else "owed",
        )
        for pair in pairs
    ]


@router.get("/groups/{group_id}/settlements", response_model=list[SettlementResponse])
def get_settlements(
    group_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_member(db, group_id, user)
    settlements = ledger.simplify_debts(db.compute_group_balances(group_id))
    users = db.get_users(
        uid for s in settlements for uid in (s.from_user_id, s.to_user_id)
    )
    return [
        SettlementResponse(
            **s.as_dict(),
            from_user=_brief(users.get(s.from_user_id)),
            to_user=_brief(users.get(s.to_user_id)),
        )
        for s in settlements
    ]


@router.post("/groups/{group_id}/refresh-balances", response_model=RefreshBalancesResponse)
def refresh_balances(
    group_id: int,
    response: Response,
    background: bool = Query(False),
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    queue: JobQueue = Depends(get_queue_client),
):
    _require_group(db, group_id)
    _require_member(db, group_id, user)
    if background:
        queue.enqueue(group_id)
        logger.info("User %s queued balance refresh for group %s", user.id, group_id)
        response.status_code = 202
        return RefreshBalancesResponse(group_id=group_id, status="queued")

    balances = db.recalculate_group_balances(group_id)
    logger.info("User %s refreshed balances for group %s", user.id, group_id)
    return RefreshBalancesResponse(
        group_id=group_id,
        status="recalculated",
        balances=_balance_entries(db, balances, _active_member_ids(db, group_id)),
    )

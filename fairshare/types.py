"""
Shared enums for records and API payloads.
"""

from __future__ import annotations

from enum import Enum


class MemberRole(str, Enum):
    OWNER = "owner"
    MEMBER = "member"


class ActivityType(str, Enum):
    CREATE_GROUP = "create_group"
    UPDATE_GROUP = "update_group"
    ADD_MEMBER = "add_member"
    REMOVE_MEMBER = "remove_member"
    LEAVE_GROUP = "leave_group"
    CREATE_INVITE_LINK = "create_invite_link"
    JOIN_VIA_INVITE = "join_via_invite"
    ADD_EXPENSE = "add_expense"
    UPDATE_EXPENSE = "update_expense"
    DELETE_EXPENSE = "delete_expense"
    RECORD_PAYMENT = "record_payment"
    UPDATE_PAYMENT = "update_payment"
    DELETE_PAYMENT = "delete_payment"


EXPENSE_ACTIVITY_TYPES = frozenset(
    {ActivityType.ADD_EXPENSE, ActivityType.UPDATE_EXPENSE, ActivityType.DELETE_EXPENSE}
)
PAYMENT_ACTIVITY_TYPES = frozenset(
    {ActivityType.RECORD_PAYMENT, ActivityType.UPDATE_PAYMENT, ActivityType.DELETE_PAYMENT}
)

import threading
import time
import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import event
from sqlalchemy.dialects import postgresql, sqlite

from fairshare.db import InMemoryDbClient, PostgresDbClient, group_lock_statement
from fairshare.errors import InvalidRequestError, NotFoundError, OutstandingBalanceError
from fairshare.types import ActivityType, MemberRole


class DbClientBehaviour:
    """
    Behaviour shared by every DbClient. Subclasses provide `make_db`.
    """

    def make_db(self):
        raise NotImplementedError

    def setUp(self):
        self.db = self.make_db()
        self.alice = self.db.create_user(email="Alice@Example.com", name="Alice")
        self.bob = self.db.create_user(email="bob@example.com", name="Bob")
        self.carol = self.db.create_user(email="carol@example.com", name="Carol")
        self.group = self.db.create_group(name="Flat", created_by=self.alice.id)
        self.db.add_member(self.group.id, self.bob.id)

    def assertCacheMatchesFresh(self, group_id):
        fresh = self.db.compute_group_balances(group_id)
        cached = {b.user_id: b.balance_amount for b in self.db.get_cached_balances(group_id)}
        for user_id, amount in cached.items():
            self.assertEqual(amount, fresh.get(user_id, Decimal("0.00")))
        self.assertEqual(sum(cached.values(), Decimal("0.00")), Decimal("0.00"))

    # Users

    def test_create_user_normalizes_email_and_dedupes_username(self):
        self.assertEqual(self.alice.email, "alice@example.com")
        self.assertEqual(self.alice.username, "alice")
        other = self.db.create_user(email="alice@other.org", name="Other Alice")
        self.assertEqual(other.username, "alice2")
        self.assertEqual(self.db.get_user_by_email("ALICE@example.com").id, self.alice.id)

    def test_duplicate_email_rejected(self):
        with self.assertRaises(InvalidRequestError):
            self.db.create_user(email="bob@example.com", name="Bobby")
        with self.assertRaises(InvalidRequestError):
            self.db.update_user(self.carol.id, email="bob@example.com")

    def test_update_user_links_firebase_uid(self):
        updated = self.db.update_user(self.bob.id, name="Robert", firebase_uid="uid-bob")
        self.assertEqual(updated.name, "Robert")
        self.assertEqual(self.db.get_user_by_firebase_uid("uid-bob").id, self.bob.id)
        self.assertEqual(set(self.db.get_users([self.bob.id, 999])), {self.bob.id})
        with self.assertRaises(NotFoundError):
            self.db.update_user(999, name="Ghost")

    # Groups and members

    def test_creator_is_owner_with_zero_balance(self):
        owner = self.db.get_member(self.group.id, self.alice.id)
        self.assertEqual(owner.role, MemberRole.OWNER)
        self.assertEqual(self.db.get_cached_balance(self.alice.id, self.group.id), Decimal("0.00"))
        self.assertEqual(
            [m.user_id for m in self.db.list_members(self.group.id)],
            [self.alice.id, self.bob.id],
        )

    def test_add_existing_member_rejected(self):
        with self.assertRaises(InvalidRequestError):
            self.db.add_member(self.group.id, self.bob.id)

    def test_list_groups_for_user_paginates(self):
        second = self.db.create_group(name="Trip", created_by=self.alice.id)
        self.assertEqual(self.db.count_groups_for_user(self.alice.id), 2)
        self.assertEqual(self.db.count_groups_for_user(self.bob.id), 1)
        first_page = self.db.list_groups_for_user(self.alice.id, limit=1)
        second_page = self.db.list_groups_for_user(self.alice.id, limit=1, offset=1)
        self.assertEqual(
            {first_page[0].id, second_page[0].id}, {self.group.id, second.id}
        )
        self.assertEqual(self.db.list_group_ids(), sorted([self.group.id, second.id]))

    def test_remove_member_requires_settled_balances(self):
        self.db.create_expense(
            group_id=self.group.id,
            title="Dinner",
            total_amount=Decimal("40.00"),
            paid_by=self.alice.id,
            participants=[(self.alice.id, Decimal("20.00")), (self.bob.id, Decimal("20.00"))],
        )
        with self.assertRaises(OutstandingBalanceError):
            self.db.remove_member(self.group.id, self.bob.id)

        self.db.create_payment(
            group_id=self.group.id,
            paid_by=self.bob.id,
            paid_to=self.alice.id,
            amount=Decimal("20.00"),
        )
        member_id = self.db.get_member(self.group.id, self.bob.id).id
        self.assertTrue(self.db.remove_member(self.group.id, self.bob.id))
        self.assertFalse(self.db.is_member(self.group.id, self.bob.id))
        self.assertEqual(self.db.get_pair_balances(self.group.id, self.bob.id), [])
        self.assertFalse(self.db.remove_member(self.group.id, self.bob.id))

        rejoined = self.db.add_member(self.group.id, self.bob.id)
        self.assertEqual(rejoined.id, member_id)
        self.assertTrue(self.db.is_member(self.group.id, self.bob.id))

    def test_delete_group_cascades(self):
        expense = self.db.create_expense(
            group_id=self.group.id,
            title="Rent",
            total_amount=Decimal("10.00"),
            paid_by=self.alice.id,
            participants=[(self.bob.id, Decimal("10.00"))],
        )
        self.db.log_activity(
            user_id=self.alice.id,
            action_type=ActivityType.ADD_EXPENSE,
            group_id=self.group.id,
            expense_id=expense.id,
        )
        self.db.create_invite(self.group.id, self.alice.id)

        self.assertTrue(self.db.delete_group(self.group.id))
        self.assertIsNone(self.db.get_group(self.group.id))
        self.assertIsNone(self.db.get_expense(expense.id))
        self.assertEqual(self.db.get_cached_balances(self.group.id), [])
        self.assertEqual(self.db.get_all_pair_balances_for_user(self.bob.id), [])
        self.assertEqual(self.db.list_activity_for_group(self.group.id), [])
        self.assertEqual(self.db.list_invites(self.group.id), [])
        self.assertFalse(self.db.delete_group(self.group.id))

    # Invites

    def test_invite_lifecycle(self):
        invite = self.db.create_invite(self.group.id, self.alice.id, code_length=10)
        self.assertEqual(len(invite.invite_code), 10)
        self.assertTrue(invite.invite_code.isalnum())
        self.assertEqual(self.db.get_invite_by_code(invite.invite_code).id, invite.id)
        self.assertTrue(invite.is_usable())

        expired = self.db.create_invite(
            self.group.id, self.alice.id, expires_at=time.time() - 60
        )
        self.assertFalse(expired.is_usable())

        self.assertTrue(self.db.deactivate_invite(invite.id))
        self.assertFalse(self.db.get_invite(invite.id).is_usable())
        self.assertEqual(len(self.db.list_invites(self.group.id)), 2)

    # Expenses and payments

    def test_expense_write_refreshes_cache(self):
        self.db.add_member(self.group.id, self.carol.id)
        expense = self.db.create_expense(
            group_id=self.group.id,
            title="Groceries",
            total_amount="90",
            paid_by=self.alice.id,
            participants=[
                (self.alice.id, Decimal("30")),
                (self.bob.id, Decimal("30")),
                (self.carol.id, Decimal("30")),
            ],
            date=date(2024, 5, 1),
            notes="weekly shop",
        )
        self.assertEqual(expense.total_amount, Decimal("90.00"))
        self.assertEqual(self.db.get_cached_balance(self.alice.id, self.group.id), Decimal("60.00"))
        self.assertEqual(self.db.get_cached_balance(self.bob.id, self.group.id), Decimal("-30.00"))
        self.assertCacheMatchesFresh(self.group.id)

        pairs = {
            p.to_user_id: p.balance_amount
            for p in self.db.get_pair_balances(self.group.id, self.bob.id)
        }
        self.assertEqual(pairs[self.alice.id], Decimal("30.00"))
        self.assertEqual(pairs[self.carol.id], Decimal("0.00"))

        fetched = self.db.get_expense(expense.id)
        self.assertEqual(fetched.date, date(2024, 5, 1))
        self.assertEqual(
            [(p.user_id, p.amount_owed) for p in fetched.participants],
            [(self.alice.id, Decimal("30.00")), (self.bob.id, Decimal("30.00")), (self.carol.id, Decimal("30.00"))],
        )

    def test_invalid_expense_is_not_stored(self):
        with self.assertRaises(InvalidRequestError):
            self.db.create_expense(
                group_id=self.group.id,
                title="Bad",
                total_amount=Decimal("10.00"),
                paid_by=self.alice.id,
                participants=[(self.bob.id, Decimal("4.00"))],
            )
        self.assertEqual(self.db.count_expenses(self.group.id), 0)
        with self.assertRaises(NotFoundError):
            self.db.create_expense(
                group_id=999,
                title="Nowhere",
                total_amount=Decimal("10.00"),
                paid_by=self.alice.id,
                participants=[(self.alice.id, Decimal("10.00"))],
            )

    def test_update_expense_replaces_participants(self):
        expense = self.db.create_expense(
            group_id=self.group.id,
            title="Taxi",
            total_amount=Decimal("20.00"),
            paid_by=self.alice.id,
            participants=[(self.alice.id, Decimal("10.00")), (self.bob.id, Decimal("10.00"))],
        )
        updated = self.db.update_expense(
            expense.id,
            title="Taxi home",
            total_amount=Decimal("30.00"),
            participants=[(self.bob.id, Decimal("30.00"))],
        )
        self.assertEqual(updated.title, "Taxi home")
        self.assertEqual([(p.user_id, p.amount_owed) for p in updated.participants], [(self.bob.id, Decimal("30.00"))])
        self.assertEqual(self.db.get_cached_balance(self.bob.id, self.group.id), Decimal("-30.00"))
        self.assertCacheMatchesFresh(self.group.id)

        with self.assertRaises(InvalidRequestError):
            self.db.update_expense(expense.id, total_amount=Decimal("50.00"))
        self.assertEqual(self.db.get_expense(expense.id).total_amount, Decimal("30.00"))

    def test_delete_expense_keeps_activity(self):
        expense = self.db.create_expense(
            group_id=self.group.id,
            title="Pizza",
            total_amount=Decimal("12.00"),
            paid_by=self.bob.id,
            participants=[(self.alice.id, Decimal("12.00"))],
        )
        entry = self.db.log_activity(
            user_id=self.bob.id,
            action_type=ActivityType.ADD_EXPENSE,
            group_id=self.group.id,
            expense_id=expense.id,
            metadata={"title": "Pizza"},
        )
        self.assertTrue(self.db.delete_expense(expense.id))
        self.assertFalse(self.db.delete_expense(expense.id))
        self.assertEqual(self.db.get_cached_balance(self.bob.id, self.group.id), Decimal("0.00"))
        activity = self.db.list_activity_for_group(self.group.id)
        self.assertEqual(activity[0].id, entry.id)
        self.assertIsNone(activity[0].expense_id)
        self.assertEqual(activity[0].metadata, {"title": "Pizza"})

    def test_list_expenses_newest_first(self):
        for day in (3, 1, 2):
            self.db.create_expense(
                group_id=self.group.id,
                title=f"Day {day}",
                total_amount=Decimal("1.00"),
                paid_by=self.alice.id,
                participants=[(self.bob.id, Decimal("1.00"))],
                date=date(2024, 1, day),
            )
        titles = [e.title for e in self.db.list_expenses(self.group.id)]
        self.assertEqual(titles, ["Day 3", "Day 2", "Day 1"])
        page = self.db.list_expenses(self.group.id, limit=1, offset=1)
        self.assertEqual([e.title for e in page], ["Day 2"])
        self.assertEqual(self.db.count_expenses(self.group.id), 3)

    def test_payment_raises_payer_balance(self):
        payment = self.db.create_payment(
            group_id=self.group.id,
            paid_by=self.bob.id,
            paid_to=self.alice.id,
            amount=Decimal("15.50"),
            note="cash",
        )
        self.assertEqual(self.db.get_cached_balance(self.bob.id, self.group.id), Decimal("15.50"))
        self.assertEqual(self.db.get_cached_balance(self.alice.id, self.group.id), Decimal("-15.50"))

        updated = self.db.update_payment(payment.id, amount=Decimal("5.00"))
        self.assertEqual(updated.amount, Decimal("5.00"))
        self.assertEqual(self.db.get_cached_balance(self.bob.id, self.group.id), Decimal("5.00"))

        self.assertTrue(self.db.delete_payment(payment.id))
        self.assertIsNone(self.db.get_payment(payment.id))
        self.assertEqual(self.db.get_cached_balance(self.bob.id, self.group.id), Decimal("0.00"))
        self.assertCacheMatchesFresh(self.group.id)

    # Activity and cross-group balances

    def test_activity_for_user_covers_their_groups(self):
        other = self.db.create_group(name="Private", created_by=self.carol.id)
        self.db.log_activity(user_id=self.alice.id, action_type=ActivityType.CREATE_GROUP, group_id=self.group.id)
        self.db.log_activity(user_id=self.bob.id, action_type=ActivityType.JOIN_VIA_INVITE, group_id=self.group.id)
        self.db.log_activity(user_id=self.carol.id, action_type=ActivityType.CREATE_GROUP, group_id=other.id)

        entries = self.db.list_activity_for_user(self.alice.id)
        self.assertEqual(
            [e.action_type for e in entries],
            [ActivityType.JOIN_VIA_INVITE, ActivityType.CREATE_GROUP],
        )
        self.assertEqual(len(self.db.list_activity_for_user(self.alice.id, limit=1)), 1)

    def test_pair_balances_across_groups(self):
        trip = self.db.create_group(name="Trip", created_by=self.bob.id)
        self.db.add_member(trip.id, self.alice.id)
        self.db.create_expense(
            group_id=self.group.id,
            title="Rent",
            total_amount=Decimal("100.00"),
            paid_by=self.alice.id,
            participants=[(self.bob.id, Decimal("100.00"))],
        )
        self.db.create_expense(
            group_id=trip.id,
            title="Fuel",
            total_amount=Decimal("40.00"),
            paid_by=self.bob.id,
            participants=[(self.alice.id, Decimal("40.00"))],
        )
        rows = self.db.get_all_pair_balances_for_user(self.bob.id)
        self.assertEqual(
            sorted((r.group_id, r.to_user_id, r.balance_amount) for r in rows),
            sorted(
                [
                    (self.group.id, self.alice.id, Decimal("100.00")),
                    (trip.id, self.alice.id, Decimal("-40.00")),
                ]
            ),
        )

    def test_recalculate_rebuilds_cache(self):
        self.db.create_expense(
            group_id=self.group.id,
            title="Rent",
            total_amount=Decimal("10.00"),
            paid_by=self.alice.id,
            participants=[(self.bob.id, Decimal("10.00"))],
        )
        balances = self.db.recalculate_group_balances(self.group.id)
        self.assertEqual(balances[self.alice.id], Decimal("10.00"))
        self.assertEqual(balances[self.bob.id], Decimal("-10.00"))
        with self.assertRaises(NotFoundError):
            self.db.recalculate_group_balances(999)

    def test_payment_that_rounds_to_zero_rejected(self):
        with self.assertRaises(InvalidRequestError):
            self.db.create_payment(
                group_id=self.group.id,
                paid_by=self.bob.id,
                paid_to=self.alice.id,
                amount=Decimal("0.004"),
            )
        self.assertEqual(self.db.list_payments(self.group.id), [])

        payment = self.db.create_payment(
            group_id=self.group.id,
            paid_by=self.bob.id,
            paid_to=self.alice.id,
            amount=Decimal("3.00"),
        )
        with self.assertRaises(InvalidRequestError):
            self.db.update_payment(payment.id, amount=Decimal("0.001"))
        self.assertEqual(self.db.get_payment(payment.id).amount, Decimal("3.00"))

    def test_ping(self):
        self.assertTrue(self.db.ping())


class InMemoryDbClientTests(DbClientBehaviour, unittest.TestCase):
    def make_db(self):
        return InMemoryDbClient()

    def test_reset_clears_everything(self):
        self.db.reset()
        self.assertIsNone(self.db.get_user(self.alice.id))
        self.assertEqual(self.db.list_group_ids(), [])

    def test_concurrent_writes_and_reads(self):
        errors = []

        def add_expenses():
            try:
                for _ in range(25):
                    self.db.create_expense(
                        group_id=self.group.id,
                        title="Snacks",
                        total_amount=Decimal("2.00"),
                        paid_by=self.alice.id,
                        participants=[
                            (self.alice.id, Decimal("1.00")),
                            (self.bob.id, Decimal("1.00")),
                        ],
                    )
                    self.db.log_activity(
                        user_id=self.alice.id,
                        action_type=ActivityType.ADD_EXPENSE,
                        group_id=self.group.id,
                    )
                    self.db.list_activity_for_user(self.bob.id, limit=None)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=add_expenses) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(self.db.count_expenses(self.group.id), 200)
        self.assertEqual(
            self.db.get_cached_balance(self.bob.id, self.group.id), Decimal("-200.00")
        )
        self.assertCacheMatchesFresh(self.group.id)


class PostgresDbClientTests(DbClientBehaviour, unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the Postgres client logic.
    """

    def make_db(self):
        return PostgresDbClient("sqlite+pysqlite:///:memory:")

    def test_requires_url(self):
        with self.assertRaises(ValueError):
            PostgresDbClient("")

    def test_recalculation_locks_the_group_row_first(self):
        statements = []

        @event.listens_for(self.db.engine, "before_cursor_execute")
        def record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        self.db.recalculate_group_balances(self.group.id)
        event.remove(self.db.engine, "before_cursor_execute", record)

        lock_index = next(
            i for i, s in enumerate(statements)
            if s.startswith("SELECT groups.id") and "groups.name" not in s
        )
        delete_index = next(
            i for i, s in enumerate(statements) if s.startswith("DELETE FROM user_balances")
        )
        self.assertLess(lock_index, delete_index)

    def test_group_lock_statement_on_postgres(self):
        compiled = str(group_lock_statement(7).compile(dialect=postgresql.dialect()))
        self.assertIn("FOR NO KEY UPDATE", compiled)
        self.assertNotIn("FOR UPDATE", str(group_lock_statement(7).compile(dialect=sqlite.dialect())))


if __name__ == "__main__":
    unittest.main()

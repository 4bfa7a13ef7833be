import unittest
from decimal import Decimal
from types import SimpleNamespace

from fairshare import ledger
from fairshare.errors import InvalidRequestError


def expense(paid_by, shares):
    return SimpleNamespace(
        paid_by=paid_by,
        participants=[
            SimpleNamespace(user_id=uid, amount_owed=Decimal(amount))
            for uid, amount in shares
        ],
    )


def payment(paid_by, paid_to, amount):
    return SimpleNamespace(paid_by=paid_by, paid_to=paid_to, amount=Decimal(amount))


class ToMoneyTests(unittest.TestCase):
    def test_rounds_half_up_to_cents(self):
        self.assertEqual(ledger.to_money("10.005"), Decimal("10.01"))
        self.assertEqual(ledger.to_money(3), Decimal("3.00"))
        self.assertEqual(ledger.to_money(0.1), Decimal("0.10"))

    def test_rejects_garbage(self):
        for value in ("abc", None, True, "NaN", "Infinity"):
            with self.assertRaises(InvalidRequestError):
                ledger.to_money(value)

    def test_rejects_amounts_beyond_column_precision(self):
        self.assertEqual(ledger.to_money("9999999999.99"), Decimal("9999999999.99"))
        for value in ("1e30", "-1e30", "10000000000.00", Decimal("1E+40")):
            with self.subTest(value=value):
                with self.assertRaises(InvalidRequestError):
                    ledger.to_money(value)


class ValidatePaymentAmountTests(unittest.TestCase):
    def test_rounds_to_cents(self):
        self.assertEqual(ledger.validate_payment_amount("0.005"), Decimal("0.01"))
        self.assertEqual(ledger.validate_payment_amount(12), Decimal("12.00"))

    def test_rejects_amounts_that_round_to_zero(self):
        for value in ("0.004", "0", "-5.00"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidRequestError):
                    ledger.validate_payment_amount(value)


class SplitEquallyTests(unittest.TestCase):
    def test_remainder_cents_go_to_first_users(self):
        shares = ledger.split_equally("100.00", [1, 2, 3])
        self.assertEqual(
            shares,
            [(1, Decimal("33.34")), (2, Decimal("33.33")), (3, Decimal("33.33"))],
        )
        self.assertEqual(sum(amount for _, amount in shares), Decimal("100.00"))

    def test_two_leftover_cents(self):
        shares = ledger.split_equally("0.05", [1, 2, 3])
        self.assertEqual([a for _, a in shares], [Decimal("0.02"), Decimal("0.02"), Decimal("0.01")])

    def test_empty_or_duplicate_users_rejected(self):
        with self.assertRaises(InvalidRequestError):
            ledger.split_equally("10", [])
        with self.assertRaises(InvalidRequestError):
            ledger.split_equally("10", [1, 1])

    def test_negative_total_rejected(self):
        with self.assertRaises(InvalidRequestError):
            ledger.split_equally("-1.00", [1, 2])


class ValidateParticipantsTests(unittest.TestCase):
    def test_accepts_exact_split(self):
        ledger.validate_participants("30.00", [(1, Decimal("10")), (2, Decimal("20"))])

    def test_tolerates_one_cent(self):
        ledger.validate_participants("10.00", [(1, Decimal("3.33")), (2, Decimal("6.66"))])

    def test_rejections(self):
        cases = [
            ("0", [(1, Decimal("0"))]),
            ("10", []),
            ("10", [(1, Decimal("5")), (1, Decimal("5"))]),
            ("10", [(1, Decimal("12")), (2, Decimal("-2"))]),
            ("10", [(1, Decimal("4")), (2, Decimal("4"))]),
        ]
        for total, participants in cases:
            with self.subTest(total=total, participants=participants):
                with self.assertRaises(InvalidRequestError):
                    ledger.validate_participants(total, participants)


class BalanceTests(unittest.TestCase):
    def setUp(self):
        self.members = [1, 2, 3]
        self.expenses = [
            expense(1, [(1, "33.34"), (2, "33.33"), (3, "33.33")]),
            expense(2, [(1, "10.00"), (3, "20.00")]),
        ]
        self.payments = [payment(3, 1, "15.00")]

    def test_expense_changes_skip_payer_share(self):
        changes = ledger.expense_balance_changes(
            1, self.expenses[0].participants
        )
        self.assertEqual(changes, {1: Decimal("66.66"), 2: Decimal("-33.33"), 3: Decimal("-33.33")})

    def test_payment_raises_payer_balance(self):
        self.assertEqual(
            ledger.payment_balance_changes(3, 1, Decimal("15.00")),
            {3: Decimal("15.00"), 1: Decimal("-15.00")},
        )

    def test_group_balances_sum_to_zero(self):
        balances = ledger.compute_group_balances(self.members, self.expenses, self.payments)
        self.assertEqual(balances[1], Decimal("41.66"))
        self.assertEqual(balances[2], Decimal("-3.33"))
        self.assertEqual(balances[3], Decimal("-38.33"))
        self.assertEqual(sum(balances.values()), Decimal("0.00"))

    def test_former_members_in_history_are_included(self):
        balances = ledger.compute_group_balances([1], [expense(1, [(9, "5.00")])], [])
        self.assertEqual(balances, {1: Decimal("5.00"), 9: Decimal("-5.00")})

    def test_pairwise_is_antisymmetric_and_matches_group_balances(self):
        pairs = ledger.compute_pairwise_balances(self.members, self.expenses, self.payments)
        balances = ledger.compute_group_balances(self.members, self.expenses, self.payments)
        for (a, b), amount in pairs.items():
            self.assertEqual(amount, -pairs[(b, a)])
        for user_id in self.members:
            owed = sum(amount for (a, _), amount in pairs.items() if a == user_id)
            self.assertEqual(owed, -balances[user_id])
        self.assertEqual(pairs[(3, 1)], Decimal("18.33"))
        self.assertEqual(pairs[(2, 1)], Decimal("23.33"))


class SimplifyDebtsTests(unittest.TestCase):
    def test_settlements_zero_every_balance(self):
        balances = {
            1: Decimal("50.00"),
            2: Decimal("-20.00"),
            3: Decimal("-35.00"),
            4: Decimal("5.00"),
        }
        settlements = ledger.simplify_debts(balances)
        self.assertLessEqual(len(settlements), len(balances) - 1)
        remaining = dict(balances)
        for s in settlements:
            remaining[s.from_user_id] += s.amount
            remaining[s.to_user_id] -= s.amount
        self.assertTrue(all(amount == 0 for amount in remaining.values()))
        self.assertEqual(settlements[0].as_dict(), {"from_user_id": 3, "to_user_id": 1, "amount": Decimal("35.00")})

    def test_ignores_sub_cent_noise(self):
        self.assertEqual(
            ledger.simplify_debts({1: Decimal("0.005"), 2: Decimal("-0.005")}), []
        )


class SummarizeUserTotalsTests(unittest.TestCase):
    def test_nets_same_counterpart_across_groups(self):
        totals = ledger.summarize_user_totals(
            [
                (2, Decimal("30.00")),
                (2, Decimal("-10.00")),
                (3, Decimal("-25.00")),
                (4, Decimal("0.00")),
            ]
        )
        self.assertEqual(totals.owes_to, [(2, Decimal("20.00"))])
        self.assertEqual(totals.owed_by, [(3, Decimal("25.00"))])
        self.assertEqual(totals.total_owes, Decimal("20.00"))
        self.assertEqual(totals.total_owed, Decimal("25.00"))
        self.assertEqual(totals.net_balance, Decimal("5.00"))


if __name__ == "__main__":
    unittest.main()

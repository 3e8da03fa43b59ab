import unittest
from decimal import Decimal

from payflix.errors import ValidationError
from payflix.money import from_units, round_cents, split_revenue, to_units


class AmountConversionTests(unittest.TestCase):
    def test_to_units(self):
        self.assertEqual(to_units('1'), 1_000_000)
        self.assertEqual(to_units(0.1), 100_000)
        self.assertEqual(to_units(Decimal('0.0000005')), 1)

    def test_from_units(self):
        self.assertEqual(from_units(1_500_000), Decimal('1.5'))
        self.assertEqual(from_units(1), Decimal('0.000001'))

    def test_round_cents_half_up(self):
        self.assertEqual(round_cents('0.005'), Decimal('0.01'))
        self.assertEqual(round_cents('0.0049'), Decimal('0.00'))

    def test_invalid_amount(self):
        for amount in ('abc', 'NaN', 'Infinity'):
            with self.subTest(amount=amount):
                with self.assertRaises(ValidationError):
                    to_units(amount)


class RevenueSplitTests(unittest.TestCase):
    def test_one_cent_fee_rounds_to_zero(self):
        split = split_revenue(to_units('0.01'), '2.85')
        self.assertEqual(split.platform_amount, Decimal('0'))
        self.assertEqual(split.creator_amount, Decimal('0.01'))

    def test_one_dollar(self):
        split = split_revenue(to_units('1.00'), '2.85')
        self.assertEqual(split.platform_amount, Decimal('0.03'))
        self.assertEqual(split.creator_amount, Decimal('0.97'))

    def test_shares_always_sum_to_amount(self):
        for cents in range(0, 2001, 7):
            units = cents * 10_000 + (cents % 3)
            split = split_revenue(units, Decimal('2.85'))
            self.assertEqual(split.creator_units + split.platform_units, units)
            self.assertGreaterEqual(split.creator_units, 0)
            self.assertEqual(split.platform_units % 10_000, 0)

    def test_full_fee(self):
        split = split_revenue(to_units('0.5'), 100)
        self.assertEqual(split.platform_units, 500_000)
        self.assertEqual(split.creator_units, 0)

    def test_rejects_out_of_range_fee(self):
        with self.assertRaises(ValidationError):
            split_revenue(100, '101')
        with self.assertRaises(ValidationError):
            split_revenue(-1, '2')

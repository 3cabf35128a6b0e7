import unittest
from decimal import Decimal

from pocketbook.amount_normalizer import normalize_amount


class AmountNormalizerTests(unittest.TestCase):
    def test_us_thousands_separator(self) -> None:
        self.assertEqual(normalize_amount("1,234.56"), Decimal("1234.56"))

    def test_european_format(self) -> None:
        self.assertEqual(normalize_amount("1.234,56"), Decimal("1234.56"))
        self.assertEqual(normalize_amount("1.234.567,89"), Decimal("1234567.89"))

    def test_comma_decimal_without_period(self) -> None:
        self.assertEqual(normalize_amount("-45,50"), Decimal("-45.50"))
        self.assertEqual(normalize_amount("0,500"), Decimal("0.500"))

    def test_comma_groups_of_three_are_thousands(self) -> None:
        self.assertEqual(normalize_amount("1,234"), Decimal("1234"))
        self.assertEqual(normalize_amount("12,345,678"), Decimal("12345678"))

    def test_accounting_parentheses_are_negative(self) -> None:
        self.assertEqual(normalize_amount("(42.00)"), Decimal("-42.00"))
        self.assertEqual(normalize_amount("($1,200.10)"), Decimal("-1200.10"))

    def test_trailing_minus_is_negative(self) -> None:
        self.assertEqual(normalize_amount("45,50-"), Decimal("-45.50"))

    def test_currency_symbols_and_spaces_are_ignored(self) -> None:
        self.assertEqual(normalize_amount("€ 12,99"), Decimal("12.99"))
        self.assertEqual(normalize_amount("$1,000.00 USD"), Decimal("1000.00"))
        self.assertEqual(normalize_amount("-1 234,50 EUR"), Decimal("-1234.50"))

    def test_sign_is_never_inverted_without_indicator(self) -> None:
        self.assertEqual(normalize_amount("42"), Decimal("42"))
        self.assertEqual(normalize_amount("+42"), Decimal("42"))

    def test_blank_and_garbage_return_none(self) -> None:
        self.assertIsNone(normalize_amount(""))
        self.assertIsNone(normalize_amount("   "))
        self.assertIsNone(normalize_amount(None))
        self.assertIsNone(normalize_amount("abc"))
        self.assertIsNone(normalize_amount("-"))

    def test_ambiguous_separators_return_none(self) -> None:
        self.assertIsNone(normalize_amount("1.2.3"))
        self.assertIsNone(normalize_amount("12,34,5"))
        self.assertIsNone(normalize_amount("12-34"))


if __name__ == "__main__":
    unittest.main()

import unittest

from pocketbook.column_mapping import NOT_MAPPED, ColumnMapping, detect_column_mapping


class DetectColumnMappingTests(unittest.TestCase):
    def test_detects_german_headers(self) -> None:
        mapping = detect_column_mapping(["Datum", "Betrag", "Text"])

        self.assertEqual(mapping, ColumnMapping(amount="Betrag", description="Text", date="Datum"))
        self.assertEqual(mapping.category, NOT_MAPPED)

    def test_detects_english_headers_case_insensitively(self) -> None:
        mapping = detect_column_mapping(["TRANSACTION DATE", "Description", "Category", "Amount"])

        self.assertEqual(mapping.date, "TRANSACTION DATE")
        self.assertEqual(mapping.description, "Description")
        self.assertEqual(mapping.category, "Category")
        self.assertEqual(mapping.amount, "Amount")

    def test_value_date_column_is_not_taken_as_amount(self) -> None:
        mapping = detect_column_mapping(["Buchungstag", "Wertstellung", "Verwendungszweck", "Betrag (EUR)"])

        self.assertEqual(mapping.amount, "Betrag (EUR)")
        self.assertEqual(mapping.date, "Buchungstag")
        self.assertEqual(mapping.description, "Verwendungszweck")

    def test_english_value_date_column_is_not_taken_as_amount(self) -> None:
        mapping = detect_column_mapping(["Booking Date", "Value Date", "Description", "Amount"])

        self.assertEqual(mapping.amount, "Amount")
        self.assertEqual(mapping.date, "Booking Date")
        self.assertEqual(mapping.description, "Description")

    def test_date_like_header_is_left_for_the_date_field(self) -> None:
        mapping = detect_column_mapping(["Total Date"])

        self.assertEqual(mapping.amount, NOT_MAPPED)
        self.assertEqual(mapping.date, "Total Date")

    def test_column_is_claimed_once(self) -> None:
        # "Category Description" matches both vocabularies; description is detected first.
        mapping = detect_column_mapping(["Category Description"])

        self.assertEqual(mapping.description, "Category Description")
        self.assertEqual(mapping.category, NOT_MAPPED)

    def test_unknown_headers_are_not_mapped(self) -> None:
        mapping = detect_column_mapping(["foo", "bar"])

        self.assertFalse(mapping.has_mapped_field())
        self.assertEqual(mapping.as_dict(), {field: NOT_MAPPED for field in ("amount", "description", "category", "date")})


class ColumnMappingTests(unittest.TestCase):
    def test_with_field_overrides_and_unmaps(self) -> None:
        headers = ["Datum", "Betrag", "Text"]
        mapping = ColumnMapping(amount="Betrag", date="Datum")

        updated = mapping.with_field("description", "Text", headers).with_field("date", None, headers)

        self.assertEqual(updated.description, "Text")
        self.assertIsNone(updated.column_for("date"))
        self.assertEqual(mapping.date, "Datum")

    def test_with_field_rejects_unknown_column_or_field(self) -> None:
        mapping = ColumnMapping()

        with self.assertRaises(ValueError):
            mapping.with_field("amount", "Missing", ["Betrag"])
        with self.assertRaises(ValueError):
            mapping.with_field("balance", "Betrag", ["Betrag"])

    def test_mapped_columns(self) -> None:
        mapping = ColumnMapping(amount="Betrag", date="Datum")

        self.assertEqual(mapping.mapped_columns(), {"Betrag", "Datum"})
        self.assertTrue(mapping.has_mapped_field())


if __name__ == "__main__":
    unittest.main()

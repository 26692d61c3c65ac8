import unittest
from datetime import datetime, timezone

from cotiz.validators import (
    days_since,
    format_datetime,
    is_valid_cnpj,
    is_valid_email,
    normalize_int_list,
    normalize_phone,
    parse_datetime,
    parse_optional_float,
)


class ValidatorsTest(unittest.TestCase):
    def test_cnpj_check_digits(self) -> None:
        self.assertTrue(is_valid_cnpj("11.222.333/0001-81"))
        self.assertTrue(is_valid_cnpj("11222333000181"))
        self.assertFalse(is_valid_cnpj("11.222.333/0001-82"))
        self.assertFalse(is_valid_cnpj("11111111111111"))
        self.assertFalse(is_valid_cnpj("1122233300018"))
        self.assertFalse(is_valid_cnpj(None))

    def test_phone_gets_country_code(self) -> None:
        self.assertEqual(normalize_phone("(11) 99999-0000"), "5511999990000")
        self.assertEqual(normalize_phone("+55 11 99999-0000"), "5511999990000")
        self.assertEqual(normalize_phone("011 3333-4444"), "551133334444")
        self.assertIsNone(normalize_phone("123"))
        self.assertIsNone(normalize_phone(""))

    def test_brazilian_amounts(self) -> None:
        self.assertEqual(parse_optional_float("R$ 1.234,56"), 1234.56)
        self.assertEqual(parse_optional_float("1,234.56"), 1234.56)
        self.assertEqual(parse_optional_float("10,5"), 10.5)
        self.assertEqual(parse_optional_float(7), 7.0)
        self.assertIsNone(parse_optional_float(True))
        self.assertIsNone(parse_optional_float("abc"))

    def test_non_finite_amounts_are_rejected(self) -> None:
        for value in ("nan", "NaN", "inf", "-inf", "Infinity", float("nan"), float("inf")):
            self.assertIsNone(parse_optional_float(value), value)
        self.assertEqual(parse_optional_float("1e3"), 1000.0)

    def test_datetimes_are_stored_in_utc_seconds(self) -> None:
        value = datetime(2026, 3, 1, 12, 30, 15, 999, tzinfo=timezone.utc)
        self.assertEqual(format_datetime(value), "2026-03-01T12:30:15Z")
        self.assertEqual(parse_datetime("2026-03-01T12:30:15Z"), value.replace(microsecond=0))
        self.assertEqual(parse_datetime("01/03/2026"), datetime(2026, 3, 1, tzinfo=timezone.utc))
        self.assertIsNone(parse_datetime("ontem"))

    def test_days_since(self) -> None:
        now = datetime(2026, 3, 10, tzinfo=timezone.utc)
        self.assertEqual(days_since("2026-03-01", now=now), 9)
        self.assertEqual(days_since("2026-03-20", now=now), 0)
        self.assertIsNone(days_since(None, now=now))

    def test_int_list_keeps_order_without_duplicates(self) -> None:
        self.assertEqual(normalize_int_list(["3", 1, "x", 3, None]), [3, 1])
        self.assertEqual(normalize_int_list("1,2"), [])

    def test_email(self) -> None:
        self.assertTrue(is_valid_email("compras@condominio.com.br"))
        self.assertFalse(is_valid_email("compras@condominio"))
        self.assertFalse(is_valid_email(None))


if __name__ == "__main__":
    unittest.main()

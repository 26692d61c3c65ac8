import unittest

from cotiz.errors import ValidationError
from cotiz.procurement.approval_rules import level_for_amount, parse_approvers, validate_level


LEVELS = [
    {"id": 1, "name": "Sindico", "amount_threshold": 1000, "max_amount_threshold": 5000, "order_level": 1, "active": True},
    {"id": 2, "name": "Conselho", "amount_threshold": 5000, "max_amount_threshold": None, "order_level": 2, "active": True},
    {"id": 3, "name": "Inativo", "amount_threshold": 0, "max_amount_threshold": None, "order_level": 0, "active": False},
]


class ApprovalRulesTest(unittest.TestCase):
    def test_amount_below_every_threshold_is_auto_approved(self) -> None:
        self.assertIsNone(level_for_amount(LEVELS, 999.99))

    def test_amount_inside_range_picks_level(self) -> None:
        self.assertEqual(level_for_amount(LEVELS, 1000)["id"], 1)
        self.assertEqual(level_for_amount(LEVELS, 4200)["id"], 1)

    def test_overlapping_levels_prefer_lowest_order(self) -> None:
        self.assertEqual(level_for_amount(LEVELS, 5000)["id"], 1)
        self.assertEqual(level_for_amount(LEVELS, 5000.01)["id"], 2)

    def test_same_order_prefers_highest_threshold(self) -> None:
        levels = [
            {"id": 10, "amount_threshold": 100, "order_level": 1, "active": True},
            {"id": 11, "amount_threshold": 500, "order_level": 1, "active": True},
        ]
        self.assertEqual(level_for_amount(levels, 800)["id"], 11)

    def test_inactive_levels_are_ignored(self) -> None:
        self.assertIsNone(level_for_amount(LEVELS[2:], 10))

    def test_parse_approvers_accepts_json_and_csv(self) -> None:
        self.assertEqual(parse_approvers("[3, 4, 3]"), [3, 4])
        self.assertEqual(parse_approvers("5, x, 6"), [5, 6])
        self.assertEqual(parse_approvers(None), [])
        self.assertEqual(parse_approvers({"id": 1}), [])

    def test_validate_level_rejects_inverted_range(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            validate_level(name="Conselho", amount_threshold=5000, max_amount_threshold=1000, approvers=[1])
        self.assertEqual(ctx.exception.code, "threshold_invalid")

    def test_validate_level_requires_name_and_approvers(self) -> None:
        with self.assertRaises(ValidationError) as missing_name:
            validate_level(name=" ", amount_threshold=0, max_amount_threshold=None, approvers=[1])
        self.assertEqual(missing_name.exception.code, "required_fields_missing")

        with self.assertRaises(ValidationError) as missing_approvers:
            validate_level(name="Sindico", amount_threshold=0, max_amount_threshold=None, approvers=[])
        self.assertEqual(missing_approvers.exception.code, "approvers_required")

    def test_validate_level_returns_parsed_range(self) -> None:
        self.assertEqual(
            validate_level(name="Sindico", amount_threshold="1000", max_amount_threshold="", approvers=[2]),
            (1000.0, None),
        )

    def test_non_finite_thresholds_are_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            validate_level(name="Sindico", amount_threshold="nan", max_amount_threshold=None, approvers=[1])
        self.assertEqual(ctx.exception.code, "threshold_invalid")

        with self.assertRaises(ValidationError) as unbounded:
            validate_level(name="Sindico", amount_threshold=100, max_amount_threshold="inf", approvers=[1])
        self.assertEqual(unbounded.exception.code, "threshold_invalid")


if __name__ == "__main__":
    unittest.main()

import unittest

from cotiz.errors import ConflictError
from cotiz.procurement.payment_flow import (
    allowed_payment_events,
    next_payment_status,
    transaction_types_for,
    transition_payment,
)


class PaymentFlowTest(unittest.TestCase):
    def test_escrow_happy_path(self) -> None:
        status = transition_payment("pending", "gateway_confirmed")
        self.assertEqual(status, "in_escrow")
        self.assertEqual(transition_payment(status, "release"), "completed")

    def test_dispute_outcomes(self) -> None:
        self.assertEqual(transition_payment("in_escrow", "dispute_opened"), "disputed")
        self.assertEqual(transition_payment("disputed", "dispute_won"), "in_escrow")
        self.assertEqual(transition_payment("disputed", "dispute_lost"), "refunded")

    def test_failed_payment_can_be_retried(self) -> None:
        self.assertEqual(transition_payment("pending", "gateway_failed"), "failed")
        self.assertEqual(transition_payment("failed", "retry"), "pending")

    def test_release_requires_escrow(self) -> None:
        with self.assertRaises(ConflictError) as ctx:
            transition_payment("pending", "release")
        self.assertEqual(ctx.exception.code, "invalid_payment_transition")
        self.assertEqual(ctx.exception.payload, {"from_status": "pending", "event": "release"})

    def test_terminal_statuses_accept_no_events(self) -> None:
        for status in ("completed", "refunded", "cancelled"):
            self.assertEqual(allowed_payment_events(status), [])
            self.assertIsNone(next_payment_status(status, "release"))

    def test_confirmation_records_receipt_and_hold(self) -> None:
        self.assertEqual(transaction_types_for("gateway_confirmed"), ("payment_received", "funds_held"))
        self.assertEqual(transaction_types_for("unknown"), ())


if __name__ == "__main__":
    unittest.main()

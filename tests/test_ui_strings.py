import unittest

from cotiz.errors import AppError, NotFoundError, ValidationError
from cotiz.ui_strings import (
    MESSAGES,
    NOTIFICATION_TEMPLATES,
    STATUS_GROUPS,
    error_message,
    format_brl,
    render_notification,
    status_label,
)


class UiStringsStatusGroupsTest(unittest.TestCase):
    def test_required_status_groups_exist(self) -> None:
        required_groups = {"cotacao", "proposta", "aprovacao", "pagamento", "entrega"}
        self.assertTrue(required_groups.issubset(set(STATUS_GROUPS.keys())))

    def test_status_labels_and_descriptions_are_not_empty(self) -> None:
        for group_name, statuses in STATUS_GROUPS.items():
            for status in statuses:
                self.assertTrue((status.get("label") or "").strip(), f"label vazio em {group_name}:{status.get('key')}")
                self.assertTrue(
                    (status.get("description") or "").strip(),
                    f"descricao vazia em {group_name}:{status.get('key')}",
                )

    def test_status_label_falls_back_to_key(self) -> None:
        self.assertEqual(status_label("pagamento", "in_escrow"), "Em custodia")
        self.assertEqual(status_label("pagamento", "desconhecido"), "desconhecido")


class UiStringsMessagesTest(unittest.TestCase):
    def test_delivery_confirmation_errors_have_messages(self) -> None:
        for code in ("CODE_NOT_FOUND", "CODE_ALREADY_USED", "CODE_EXPIRED", "PERMISSION_DENIED"):
            self.assertIn(code, MESSAGES["error"])

    def test_app_error_payload_uses_friendly_message(self) -> None:
        error = NotFoundError(code="quote_not_found", payload={"quote_id": 9})
        payload = error.to_response_payload("req-1")
        self.assertEqual(payload["error"], "quote_not_found")
        self.assertEqual(payload["message"], error_message("quote_not_found"))
        self.assertEqual(payload["request_id"], "req-1")
        self.assertEqual(payload["quote_id"], 9)
        self.assertEqual(error.http_status, 404)

    def test_unknown_message_key_falls_back_to_class_default(self) -> None:
        error = ValidationError(code="campo_estranho")
        self.assertEqual(error.user_message(), error_message("validation_error"))
        self.assertTrue(AppError().critical)

    def test_brl_format(self) -> None:
        self.assertEqual(format_brl(1234567.891), "1.234.567,89")
        self.assertEqual(format_brl(None), "0,00")


class NotificationTemplatesTest(unittest.TestCase):
    def test_templates_have_title_and_text(self) -> None:
        for key, template in NOTIFICATION_TEMPLATES.items():
            self.assertTrue(template.get("title"), key)
            self.assertTrue(template.get("text"), key)

    def test_render_tolerates_missing_context(self) -> None:
        rendered = render_notification("quote_invitation", supplier_name="Vidracaria Sol", link="http://x/q/ABC")
        self.assertEqual(rendered["title"], "Nova cotacao disponivel")
        self.assertIn("Vidracaria Sol", rendered["text"])
        self.assertIn("http://x/q/ABC", rendered["text"])
        self.assertNotIn("{", rendered["text"])

    def test_render_unknown_template_raises(self) -> None:
        with self.assertRaises(KeyError):
            render_notification("template_inexistente")


if __name__ == "__main__":
    unittest.main()

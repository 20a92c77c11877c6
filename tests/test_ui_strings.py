import unittest

from autoquote.contexts.quotation.domain.machine import TRANSITIONS, QuotationState
from autoquote.ui_strings import MESSAGES, QUOTATION_STATES, error_message, state_label, success_message


class UiStringsTest(unittest.TestCase):
    def test_every_state_has_label_and_description(self) -> None:
        keys = {item["key"] for item in QUOTATION_STATES}
        self.assertEqual(keys, {state.value for state in QuotationState})
        for item in QUOTATION_STATES:
            self.assertTrue((item.get("label") or "").strip(), f"label vazio: {item['key']}")
            self.assertTrue((item.get("description") or "").strip(), f"descricao vazia: {item['key']}")

    def test_every_guard_error_key_has_message(self) -> None:
        for transitions in TRANSITIONS.values():
            for transition in transitions.values():
                self.assertIn(transition.error_key, MESSAGES["errors"])

    def test_lookup_fallbacks(self) -> None:
        self.assertEqual(state_label("sent"), "Enviada")
        self.assertEqual(state_label("archived"), "archived")
        self.assertEqual(error_message("missing_key", "padrao"), "padrao")
        self.assertEqual(success_message("missing_key"), "missing_key")


if __name__ == "__main__":
    unittest.main()

import os
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from enrollbot.i18n import Translator, normalize_text, unsafe_string_format


class TestNormalizeText(unittest.TestCase):
    def test_accents_case_and_spacing(self):
        self.assertEqual(normalize_text("  Mi   MATRÍCULA\n"), "mi matricula")
        self.assertEqual(normalize_text(None), "")


class TestUnsafeStringFormat(unittest.TestCase):
    def test_unknown_placeholders_are_left_alone(self):
        self.assertEqual(unsafe_string_format("{a} and {b}", a=1), "1 and {b}")


class TestTranslator(unittest.TestCase):
    def setUp(self):
        self.translator = Translator()

    def test_bundled_locales(self):
        self.assertTrue(self.translator.supports("es"))
        self.assertTrue(self.translator.supports("en"))
        self.assertFalse(self.translator.supports("xx"))

    def test_translate_with_params(self):
        self.assertIn("Ana", self.translator.translate("session_started", "en", name="Ana"))

    def test_unknown_locale_falls_back(self):
        self.assertEqual(self.translator.translate("welcome", "xx"), self.translator.translate("welcome", "es"))

    def test_missing_key_returns_key(self):
        self.assertEqual(self.translator.translate("no_such_key", "en"), "no_such_key")

    def test_phrases_merge_locales(self):
        phrases = self.translator.phrases("cmd_my_enrollment")
        self.assertIn("mi matricula", phrases)
        self.assertIn("my enrollment", phrases)
        self.assertEqual(self.translator.phrases("cmd_help", "en"), {"help"})

    def test_field_labels_merge_locales(self):
        labels = self.translator.field_labels()
        self.assertEqual(labels["creditos"], "credits")
        self.assertEqual(labels["credits"], "credits")

    def test_locale_file_needs_field_labels(self):
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "es.json").write_text('// comment\n{"welcome": "hi"}', encoding="utf-8")
            with self.assertRaises(ValueError):
                Translator(locales_dir=tmp)

    def test_fallback_locale_must_exist(self):
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "en.json").write_text('{"field_labels": {}}', encoding="utf-8")
            with self.assertRaises(FileNotFoundError):
                Translator(locales_dir=tmp, fallback="es")


if __name__ == "__main__":
    unittest.main()

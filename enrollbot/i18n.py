# enrollbot/i18n.py
from __future__ import annotations

import logging
import re
import unicodedata
from pathlib import Path
from typing import Any, Dict

import commentjson

from enrollbot import settings

logger = logging.getLogger("enrollbot")

LOCALES_DIR = Path(__file__).parent / "locales"


def normalize_text(value: str) -> str:
    """Lowercase, strip accents and collapse whitespace so typed phrases compare loosely."""
    decomposed = unicodedata.normalize("NFKD", value or "")
    no_marks = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(no_marks.lower().split())


def unsafe_string_format(dest_string: str, print_unused_keys_report: bool = True, **kwargs) -> str:
    """
    Replaces {key} placeholders with kwargs values, leaving unknown placeholders untouched.

    Unlike str.format it only looks for the keys passed in kwargs, so stray braces in a
    translation never raise.
    """
    missing_keys = []

    def replacer(match):
        key = match.group(1)
        if key in kwargs:
            return str(kwargs[key])
        missing_keys.append(key)
        return match.group(0)

    result = re.sub(r'\{(\w+)\}', replacer, dest_string)
    if missing_keys and print_unused_keys_report:
        logger.debug(f"Missing keys within string-to-format: {', '.join(missing_keys)}")
    return result


def _load_locale_file(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Locale file must hold a JSON object: {path}")
    if not isinstance(data.get("field_labels"), dict):
        raise ValueError(f"Locale file missing or invalid key 'field_labels': {path}")
    return data


class Translator:
    """
    Localization lookup: translate(key, locale, **params) -> str.

    Besides display strings it supplies the phrases users can type (list-valued "opt_*"/"cmd_*" keys)
    and the field-label table used by the key:value parser.
    """

    def __init__(self, locales_dir: Path | str | None = None, fallback: str | None = None):
        self.locales_dir = Path(locales_dir or LOCALES_DIR)
        self.fallback = fallback or settings.DEFAULT_LOCALE
        self._catalogs: Dict[str, Dict[str, Any]] = {}
        for path in sorted(self.locales_dir.glob("*.json")):
            self._catalogs[path.stem] = _load_locale_file(path)
        if self.fallback not in self._catalogs:
            raise FileNotFoundError(
                f"Fallback locale '{self.fallback}' not found in '{self.locales_dir}'"
            )

    @property
    def locales(self) -> list[str]:
        return list(self._catalogs.keys())

    def supports(self, locale: str) -> bool:
        return locale in self._catalogs

    def _lookup(self, key: str, locale: str | None) -> Any:
        catalog = self._catalogs.get(locale or self.fallback) or self._catalogs[self.fallback]
        if key in catalog:
            return catalog[key]
        return self._catalogs[self.fallback].get(key)

    def translate(self, key: str, locale: str | None = None, **params) -> str:
        value = self._lookup(key, locale)
        if value is None:
            logger.warning("missing translation key=%s locale=%s", key, locale)
            return key
        if isinstance(value, list):
            value = value[0] if value else key
        return unsafe_string_format(str(value), **params)

    def phrases(self, key: str, locale: str | None = None) -> set[str]:
        """Normalized phrases for an "opt_*"/"cmd_*" key; every locale when `locale` is None."""
        catalogs = [self._catalogs[locale]] if locale in self._catalogs else self._catalogs.values()
        found: set[str] = set()
        for catalog in catalogs:
            value = catalog.get(key)
            if value is None:
                continue
            items = value if isinstance(value, list) else [value]
            found.update(normalize_text(str(v)) for v in items if str(v).strip())
        return found

    def field_labels(self) -> Dict[str, str]:
        """Normalized label -> canonical field key, merged across every locale."""
        labels: Dict[str, str] = {}
        for catalog in self._catalogs.values():
            for label, canonical in catalog["field_labels"].items():
                labels[normalize_text(label)] = canonical
        return labels

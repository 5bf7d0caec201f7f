# sendbox/common/localization.py
"""
Тексты уведомлений из config/lang_dict.json.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

FALLBACK_LANGUAGE = "fr"


def get_lang_dict_path() -> Path:
    return Path(__file__).parent.parent.parent / "config" / "lang_dict.json"


@lru_cache()
def load_lang_dict() -> dict[str, dict[str, str]]:
    """
    Загружает словарь переводов (кэшируется).

    Raises:
        FileNotFoundError: Файла нет
    """
    lang_path = get_lang_dict_path()
    if not lang_path.exists():
        raise FileNotFoundError(f"Файл локализации не найден: {lang_path}")

    with open(lang_path, "r", encoding="utf-8") as f:
        return json.load(f)


def get_text(
    key: str,
    lang: str = FALLBACK_LANGUAGE,
    default: str | None = None,
    **kwargs: Any,
) -> str:
    """
    Локализованный текст по ключу.

    Args:
        key: Ключ перевода
        lang: Код языка (fr, en)
        default: Значение, если ключа нет
        **kwargs: Параметры форматирования

    Example:
        >>> get_text("NOTIF_BOOKING_REQUEST_CONTENT", "en", kilos="5")
        "A sender wants to book 5 kg on your trip."
    """
    translations = load_lang_dict().get(key)
    if not translations:
        return default if default is not None else f"[{key}]"

    text = translations.get(lang) or translations.get(FALLBACK_LANGUAGE)
    if not text:
        text = next(iter(translations.values()), f"[{key}]")

    if kwargs:
        try:
            text = text.format(**kwargs)
        except KeyError:
            pass  # Недостающие параметры оставляем как есть

    return text


def get_available_languages() -> list[str]:
    first_key = next(iter(load_lang_dict().values()), {})
    return list(first_key.keys())


def validate_lang_dict() -> list[str]:
    """Ключи без перевода на один из языков."""
    errors = []
    available_langs = set(get_available_languages())

    for key, translations in load_lang_dict().items():
        if not isinstance(translations, dict):
            errors.append(f"Ключ '{key}' имеет неверный формат")
            continue
        missing = available_langs - set(translations.keys())
        if missing:
            errors.append(f"Ключ '{key}' не имеет перевода для языков: {sorted(missing)}")

    return errors

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from otasync import config
from otasync.errors import MissingTranslationError
from otasync.services.channel_config_service import content_rules_for, language_setting

logger = logging.getLogger(__name__)


class Translator(Protocol):
    async def translate(self, text: str, source: str, target: str) -> str:
        ...


class HttpTranslator:
    """POST {q, source, target} and read `translatedText` (LibreTranslate-style)."""

    def __init__(self, url: str, api_key: str = "", timeout_s: float = 10.0) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout_s = timeout_s

    async def translate(self, text: str, source: str, target: str) -> str:
        body: Dict[str, Any] = {"q": text, "source": source.lower(), "target": target.lower(), "format": "text"}
        if self.api_key:
            body["api_key"] = self.api_key
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s)) as client:
            resp = await client.post(self.url, json=body)
        resp.raise_for_status()
        translated = (resp.json() or {}).get("translatedText")
        if not translated:
            raise ValueError("translation provider returned no text")
        return str(translated)


def default_translator() -> Optional[Translator]:
    if not config.TRANSLATION_API_URL:
        return None
    return HttpTranslator(config.TRANSLATION_API_URL, config.TRANSLATION_API_KEY)


def _has_text(entry: Optional[Dict[str, Any]]) -> bool:
    return bool(entry and (entry.get("description") or entry.get("name")))


def target_languages(cfg: Dict[str, Any], requested: Optional[List[str]] = None) -> List[str]:
    """Requested languages that the configuration supports, else every active one."""

    languages = cfg.get("languages") or {}
    active = [
        s["language_code"]
        for s in languages.get("supported_languages") or []
        if s.get("is_active", True)
    ]
    if requested:
        wanted = [code.upper() for code in requested]
        return [code for code in wanted if code in active]
    primary = languages.get("primary_language")
    # primary first so partial failures still push the main listing language
    return sorted(active, key=lambda code: (code != primary, code))


class LocalizationService:
    def __init__(self, translator: Optional[Translator] = None) -> None:
        self.translator = translator

    async def _machine_translate(
        self,
        translations: Dict[str, Dict[str, Any]],
        source: str,
        target: str,
    ) -> Optional[Dict[str, Any]]:
        if self.translator is None or not _has_text(translations.get(source)):
            return None
        src = translations[source]
        out: Dict[str, Any] = {}
        try:
            for field in ("name", "description"):
                if src.get(field):
                    out[field] = await self.translator.translate(str(src[field]), source, target)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("machine translation %s->%s failed: %s", source, target, e)
            return None
        return out

    async def localize(self, cfg: Dict[str, Any], content: Dict[str, Any], language: str) -> Dict[str, Any]:
        """Room content in `language`.

        Order: stored translation, machine translation when the language has
        auto_translate, then the language's fallback (or the primary
        language). Raises MissingTranslationError when all of them are empty.
        """

        language = language.upper()
        translations = {k.upper(): v for k, v in (content.get("translations") or {}).items()}
        setting = language_setting(cfg, language) or {}
        primary = ((cfg.get("languages") or {}).get("primary_language") or "EN").upper()
        fallback = (setting.get("fallback_language") or primary).upper()

        entry = translations.get(language)
        source_language = language
        machine = False
        if not _has_text(entry) and setting.get("auto_translate"):
            source = primary if _has_text(translations.get(primary)) else fallback
            entry = await self._machine_translate(translations, source, language)
            machine = _has_text(entry)
        if not _has_text(entry) and fallback != language:
            entry = translations.get(fallback)
            source_language = fallback
        if not _has_text(entry):
            raise MissingTranslationError(language, "description")

        return {
            "language": language,
            "channel_language": setting.get("channel_language_code") or language.lower(),
            "content_language": source_language,
            "machine_translated": machine,
            "name": entry.get("name") or content.get("name"),
            "description": entry.get("description") or "",
            "images": list(content.get("images") or []),
            "amenities": list(content.get("amenities") or []),
        }


def validate_content(cfg: Dict[str, Any], localized: Dict[str, Any]) -> List[str]:
    """Content-rule violations for one localized payload; empty means valid."""

    rules = content_rules_for(cfg)
    problems: List[str] = []
    length = len(localized.get("description") or "")
    if length < int(rules.get("min_description_length") or 0):
        problems.append(f"description shorter than {rules['min_description_length']} characters")
    if rules.get("max_description_length") and length > int(rules["max_description_length"]):
        problems.append(f"description longer than {rules['max_description_length']} characters")
    if len(localized.get("images") or []) < int(rules.get("min_images") or 0):
        problems.append(f"at least {rules['min_images']} images required")
    return problems

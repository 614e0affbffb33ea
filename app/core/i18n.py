"""
Internationalization (i18n) support for CampusReport.

This module loads the JSON translation files and provides the texts used
for automatic report comments and API messages.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from app.core.config import settings

logger = structlog.get_logger(__name__)

# Language configuration
DEFAULT_LANGUAGE = settings.DEFAULT_LANGUAGE
SUPPORTED_LANGUAGES = settings.SUPPORTED_LANGUAGES
FALLBACK_LANGUAGE = "en"

TRANSLATIONS_DIR = Path(__file__).resolve().parent.parent / "translations"


class TranslationLoader:
    """Loads and manages translation files."""

    def __init__(self, translations_dir: Path = TRANSLATIONS_DIR):
        self.translations_dir = Path(translations_dir)
        self._translations: Dict[str, Dict[str, str]] = {}
        self._loaded_languages: set = set()

    def load_language(self, language: str) -> Dict[str, str]:
        """Load translations for a specific language."""
        if language in self._loaded_languages:
            return self._translations.get(language, {})

        translation_file = self.translations_dir / f"{language}.json"

        if not translation_file.exists():
            logger.debug(
                "Translation file not found",
                language=language,
                file_path=str(translation_file)
            )
            self._translations[language] = {}
            self._loaded_languages.add(language)
            return {}

        try:
            with open(translation_file, "r", encoding="utf-8") as f:
                translations = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(
                "Failed to load translation file",
                language=language,
                file_path=str(translation_file),
                error=str(e)
            )
            translations = {}

        self._translations[language] = translations
        self._loaded_languages.add(language)
        logger.debug("Loaded translations", language=language, count=len(translations))
        return translations

    def get_translation(self, language: str, key: str) -> Optional[str]:
        """Get a specific translation."""
        if language not in self._loaded_languages:
            self.load_language(language)

        return self._translations.get(language, {}).get(key)


class I18nService:
    """Main internationalization service."""

    def __init__(self, loader: Optional[TranslationLoader] = None):
        self.loader = loader or TranslationLoader()

    def get_text(self, key: str, language: Optional[str] = None, **kwargs) -> str:
        """
        Get translated text for a key.

        Args:
            key: Translation key
            language: Target language, defaults to DEFAULT_LANGUAGE
            **kwargs: Variables to substitute in the translation

        Returns:
            Translated text with variables substituted
        """
        language = language or DEFAULT_LANGUAGE
        text = self._get_translation_with_fallback(key, language)

        if kwargs:
            try:
                text = text.format(**kwargs)
            except (KeyError, ValueError) as e:
                logger.warning(
                    "Failed to substitute variables in translation",
                    key=key,
                    language=language,
                    error=str(e)
                )

        return text

    def has_text(self, key: str, language: Optional[str] = None) -> bool:
        return self.loader.get_translation(language or DEFAULT_LANGUAGE, key) is not None

    def _get_translation_with_fallback(self, key: str, language: str) -> str:
        """Get translation with fallback to other languages."""
        if language in SUPPORTED_LANGUAGES:
            translation = self.loader.get_translation(language, key)
            if translation:
                return translation

        if language != FALLBACK_LANGUAGE:
            translation = self.loader.get_translation(FALLBACK_LANGUAGE, key)
            if translation:
                return translation

        logger.debug("Translation not found", key=key, language=language)
        return f"[{key}]"

    def get_supported_languages(self) -> List[str]:
        return list(SUPPORTED_LANGUAGES)


_i18n_service = I18nService()


def get_text(key: str, language: Optional[str] = None, **kwargs) -> str:
    """Get translated text."""
    return _i18n_service.get_text(key, language, **kwargs)


def get_supported_languages() -> List[str]:
    return _i18n_service.get_supported_languages()


# =============================================================================
# Automatic report comments
# =============================================================================

class ReportMessages:
    """Predefined keys for automatic report comments."""

    ACKNOWLEDGEMENT = "report.acknowledgement.{category}"
    STATUS_CHANGE = "report.status_change.{status}"
    STATUS_DETAIL = "report.status_detail.{status}.{category}"


def acknowledgement_text(category: str, language: Optional[str] = None) -> str:
    """Comment appended to every new report, chosen by category."""
    key = ReportMessages.ACKNOWLEDGEMENT.format(category=category)
    if not _i18n_service.has_text(key, language):
        key = ReportMessages.ACKNOWLEDGEMENT.format(category="other")
    return get_text(key, language)


def status_change_text(status: str, category: str, language: Optional[str] = None) -> Optional[str]:
    """Comment appended when a report enters ``status``; None when no template exists."""
    key = ReportMessages.STATUS_CHANGE.format(status=status)
    if not _i18n_service.has_text(key, language):
        return None

    detail_key = ReportMessages.STATUS_DETAIL.format(status=status, category=category)
    if not _i18n_service.has_text(detail_key, language):
        detail_key = ReportMessages.STATUS_DETAIL.format(status=status, category="other")
    return get_text(key, language, detail=get_text(detail_key, language))


__all__ = [
    "TranslationLoader",
    "I18nService",
    "ReportMessages",
    "get_text",
    "get_supported_languages",
    "acknowledgement_text",
    "status_change_text",
]

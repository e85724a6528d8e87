"""
Language-dependent strings used by the session core.

Covers the languages the learner can pick for explanations, the error bubble
shown when the tutor cannot answer, and display names of mistake categories.
"""

from typing import Dict, List

from .schemas import CorrectionPayload

ENGLISH = "English"
FRENCH = "French"
ARABIC = "Arabic"

SUPPORT_LANGUAGES = [ENGLISH, FRENCH, ARABIC]
DEFAULT_LANGUAGE = ENGLISH

# Error bubble appended when the tutor fails after all retries
FALLBACK_NOTES = {
    ENGLISH: "There seems to be a technical problem. Please try again.",
    FRENCH: "Il semble y avoir un problème technique. Veuillez réessayer.",
    ARABIC: "يبدو أن هناك مشكلة تقنية. يرجى المحاولة مرة أخرى.",
}

CATEGORY_LABELS: Dict[str, Dict[str, str]] = {
    ENGLISH: {
        'Grammar': "Grammar",
        'Conjugation': "Conjugation",
        'Vocabulary': "Vocabulary",
        'Orthographe': "Spelling",
        'Prepositions': "Prepositions",
        'Gender': "Gender",
    },
    FRENCH: {
        'Grammar': "Grammaire",
        'Conjugation': "Conjugaison",
        'Vocabulary': "Vocabulaire",
        'Orthographe': "Orthographe",
        'Prepositions': "Prépositions",
        'Gender': "Genre",
    },
    ARABIC: {
        'Grammar': "قواعد",
        'Conjugation': "تصريف الأفعال",
        'Vocabulary': "مفردات",
        'Orthographe': "إملاء",
        'Prepositions': "حروف الجر",
        'Gender': "الجنس",
    },
}

# Sentences offered on an empty conversation
SUGGESTIONS = {
    ENGLISH: [
        "Je suis très contente de te voir",
        "How do you say 'I need to book a table' in French?",
        "J'ai aller au cinema hier",
        "Il faut que je vais partir maintenant",
    ],
    FRENCH: [
        "Je suis très contente de te voir",
        "Comment dit-on 'I need to book a table' en français ?",
        "J'ai aller au cinema hier",
        "Il faut que je vais partir maintenant",
    ],
    ARABIC: [
        "Je suis très contente de te voir",
        "كيف أقول 'أحتاج لحجز طاولة' بالفرنسية؟",
        "J'ai aller au cinema hier",
        "Il faut que je vais partir maintenant",
    ],
}


def normalize_language(language: str) -> str:
    """Return a supported language, falling back to the default."""
    for supported in SUPPORT_LANGUAGES:
        if language and language.lower() == supported.lower():
            return supported
    return DEFAULT_LANGUAGE


def fallback_payload(language: str) -> CorrectionPayload:
    """Payload of the error bubble shown after a failed tutor call."""
    return CorrectionPayload(
        corrected_text="Désolé",
        translation="I encountered an error.",
        corrections=[],
        notes=FALLBACK_NOTES[normalize_language(language)],
    )


def translate_category(category: str, language: str) -> str:
    """Display name of a category. Unknown categories are shown as-is."""
    return CATEGORY_LABELS[normalize_language(language)].get(category, category)


def suggestions_for(language: str) -> List[str]:
    return list(SUGGESTIONS[normalize_language(language)])

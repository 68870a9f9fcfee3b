"""Localized copy of the check-in reminder."""

from dataclasses import dataclass
from datetime import date
from typing import Dict, Optional

REMINDER_EVENT = "ritual:reminder"
REMINDER_TYPE = "RITUAL_REMINDER"
DEFAULT_LANGUAGE = "pt"


@dataclass(frozen=True)
class ReminderCopy:
    title: str
    body: str


_TEMPLATES: Dict[str, Dict[str, str]] = {
    "pt": {
        "title": "Lembrete do seu ritual",
        "body": 'hora de revisar seu ritual de {day}: "{title}". Marque se concluiu ou não.',
        "date_format": "%d/%m",
    },
    "en": {
        "title": "Your ritual reminder",
        "body": 'time to review your ritual for {day}: "{title}". Mark whether you did it.',
        "date_format": "%m/%d",
    },
}


def language_for(locale: Optional[str]) -> str:
    """``pt-BR`` -> ``pt``; anything without a template falls back to Portuguese."""
    if not locale:
        return DEFAULT_LANGUAGE
    language = locale.replace("_", "-").split("-")[0].lower()
    return language if language in _TEMPLATES else DEFAULT_LANGUAGE


def build_reminder_copy(
    title: str,
    local_date: date,
    display_name: Optional[str] = None,
    locale: Optional[str] = None,
) -> ReminderCopy:
    template = _TEMPLATES[language_for(locale)]
    body = template["body"].format(
        day=local_date.strftime(template["date_format"]), title=title
    )
    if display_name and display_name.strip():
        body = f"{display_name.strip()}, {body}"
    else:
        body = body[0].upper() + body[1:]
    return ReminderCopy(title=template["title"], body=body)


def reminder_deep_link(ritual_id: str) -> str:
    return f"whisper://ritual/{ritual_id}"


def reminder_data(ritual_id: str) -> Dict[str, str]:
    return {
        "type": REMINDER_TYPE,
        "ritualId": ritual_id,
        "deepLink": reminder_deep_link(ritual_id),
    }

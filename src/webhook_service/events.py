"""Built-in event catalog registered at startup."""
from __future__ import annotations

from webhook_service.domain.webhooks import WebhookEventCreateDTO


def _event(name: str, description: str) -> WebhookEventCreateDTO:
    category = name.split(".", 1)[0]
    return WebhookEventCreateDTO(
        name=name,
        category=category,
        display_name=name.replace(".", " ").replace("_", " ").title(),
        description=description,
        sample_payload={"id": "123", "timestamp": "2024-01-01T00:00:00Z"},
    )


PATIENT_EVENTS = [
    _event("patient.created", "A patient record was created"),
    _event("patient.updated", "A patient record was updated"),
    _event("patient.deleted", "A patient record was deleted"),
]

CLAIM_EVENTS = [
    _event("claim.submitted", "A claim was submitted"),
    _event("claim.status_changed", "A claim moved to a new status"),
    _event("claim.approved", "A claim was approved"),
    _event("claim.denied", "A claim was denied"),
]

ENCOUNTER_EVENTS = [
    _event("encounter.created", "An encounter was opened"),
    _event("encounter.status_changed", "An encounter moved to a new status"),
    _event("encounter.completed", "An encounter was completed"),
]

AUTH_EVENTS = [
    _event("auth.user_registered", "A user account was registered"),
    _event("auth.user_logged_in", "A user logged in"),
    _event("auth.user_logged_out", "A user logged out"),
]

BUILTIN_EVENTS = [*PATIENT_EVENTS, *CLAIM_EVENTS, *ENCOUNTER_EVENTS, *AUTH_EVENTS]

from django.conf import settings

DEFAULTS = {
    "DUPLICATE_SUBMISSION_WINDOW_SECONDS": 5,
    "MONEY_TOLERANCE": "0.01",
    "MAX_FREEZE_DAYS": 30,
    "GOODWILL_REASON_MIN_LENGTH": 5,
}


def ledger_setting(name: str):
    overrides = getattr(settings, "LEDGER", {}) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]

import logging

from pydantic import ValidationError

from .exceptions import InvalidSettingsError
from .models import CommissionDefaults, CommissionSettings, PartnershipSettings
from .store import InMemoryStore

logger = logging.getLogger(__name__)

SETTINGS_COLLECTION = "settings"
COMMISSION_DOC = "commission"
PARTNERSHIP_DOC = "partnership"


def load_commission_settings(store: InMemoryStore) -> CommissionSettings:
    """Read the commission settings document, filling gaps from the defaults."""
    doc = store.get(SETTINGS_COLLECTION, COMMISSION_DOC) or {}
    merged = CommissionDefaults().model_dump()
    merged.update(doc.get("defaults") or {})
    try:
        return CommissionSettings(defaults=CommissionDefaults(**merged))
    except ValidationError as e:
        raise InvalidSettingsError(f"Invalid commission settings: {e}") from e


def load_partnership_settings(store: InMemoryStore) -> PartnershipSettings:
    doc = store.get(SETTINGS_COLLECTION, PARTNERSHIP_DOC) or {}
    merged = PartnershipSettings().model_dump()
    merged.update({k: v for k, v in doc.items() if v is not None})
    try:
        return PartnershipSettings(**merged)
    except ValidationError as e:
        raise InvalidSettingsError(f"Invalid partnership settings: {e}") from e

"""Per-tenant queue settings: loaded from the store and validated, never defaulted for capacity fields."""

import logging

from pydantic import ValidationError

from app.models.queue import QueueSettings
from app.modules.store.base import LeadStore
from app.modules.store.retry import with_retries

logger = logging.getLogger(__name__)


class QueueSettingsError(Exception):
    """Tenant queue settings are missing or invalid."""


def parse_queue_settings(tenant_id: str, sections: dict) -> QueueSettings:
    try:
        return QueueSettings.model_validate({**sections, "tenant_id": tenant_id})
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise QueueSettingsError(f"invalid queue settings for {tenant_id}: {problems}") from e


async def load_queue_settings(store: LeadStore, tenant_id: str) -> QueueSettings:
    sections = await with_retries(
        lambda: store.get_queue_settings(tenant_id),
        f"load queue settings for {tenant_id}",
    )
    if not sections:
        raise QueueSettingsError(f"no queue settings for {tenant_id}")
    return parse_queue_settings(tenant_id, sections)

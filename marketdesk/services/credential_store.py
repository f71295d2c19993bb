"""Per-tenant credential store (encrypted at rest)."""

import json

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketdesk.db.enums import SyncSystem
from marketdesk.db.models import TenantCredential
from marketdesk.types import JsonObject


def get_credentials(
    db: Session, tenant_id: str, system: SyncSystem | str
) -> JsonObject | None:
    """Return the decrypted credential dict, or None if the tenant has none."""
    system_value = system.value if isinstance(system, SyncSystem) else system
    row = db.scalar(
        select(TenantCredential).where(
            TenantCredential.tenant_id == tenant_id,
            TenantCredential.system == system_value,
        )
    )
    if not row or not row.secret:
        return None
    return json.loads(row.secret)


def put_credentials(
    db: Session, tenant_id: str, system: SyncSystem | str, credentials: JsonObject
) -> TenantCredential:
    """Create or replace the credentials for (tenant, system)."""
    system_value = system.value if isinstance(system, SyncSystem) else system
    row = db.scalar(
        select(TenantCredential).where(
            TenantCredential.tenant_id == tenant_id,
            TenantCredential.system == system_value,
        )
    )
    secret = json.dumps(credentials, sort_keys=True)
    if row is None:
        row = TenantCredential(tenant_id=tenant_id, system=system_value, secret=secret)
        db.add(row)
    else:
        row.secret = secret
    db.commit()
    db.refresh(row)
    return row

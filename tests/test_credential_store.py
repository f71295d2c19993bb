from sqlalchemy import text

from marketdesk.db.enums import SyncSystem
from marketdesk.services import credential_store


def test_credentials_are_encrypted_at_rest(db):
    credential_store.put_credentials(
        db, "t1", SyncSystem.MARKETPLACE_ORDERS, {"refresh_token": "Atzr|secret"}
    )

    raw = db.execute(text("SELECT secret FROM tenant_credentials")).scalar_one()
    assert raw.startswith("enc:")
    assert "Atzr|secret" not in raw
    assert credential_store.get_credentials(db, "t1", SyncSystem.MARKETPLACE_ORDERS) == {
        "refresh_token": "Atzr|secret"
    }


def test_put_credentials_replaces_existing(db):
    credential_store.put_credentials(db, "t1", "marketplace_orders", {"refresh_token": "old"})
    credential_store.put_credentials(db, "t1", "marketplace_orders", {"refresh_token": "new"})

    assert credential_store.get_credentials(db, "t1", "marketplace_orders") == {"refresh_token": "new"}
    assert credential_store.get_credentials(db, "t2", "marketplace_orders") is None

"""Tests for the shop credential store and the campaign status store."""

import pytest

from config import settings
from conftest import SHOP, TOKEN, read_campaign
from database import crud, encryption
from database.models import Shop
from domain import CampaignStatus, CampaignStatusUpdate, RestockStatus
from errors import ConfigurationError, ShopCredentialsInvalid, ShopNotFound


class TestShops:
    def test_token_is_stored_encrypted(self, db):
        crud.save_shop(db, SHOP, TOKEN, {"name": "Loyal Shop"})

        row = db.query(Shop).filter_by(shop_domain=SHOP).one()
        assert TOKEN not in row.access_token_encrypted

        shop = crud.get_shop(db, SHOP)
        assert shop.access_token == TOKEN
        assert shop.shop_data == {"name": "Loyal Shop"}

    def test_missing_shop(self, db):
        assert crud.get_shop(db, "nope.myshopify.com") is None

    def test_save_updates_existing_shop(self, db):
        crud.save_shop(db, SHOP, TOKEN)
        crud.save_shop(db, SHOP, "shpat_rotated")

        assert crud.get_shop(db, SHOP).access_token == "shpat_rotated"
        assert len(crud.get_all_shops(db)) == 1

    def test_delete_shop(self, db):
        crud.save_shop(db, SHOP, TOKEN)

        assert crud.delete_shop(db, SHOP) is True
        assert crud.delete_shop(db, SHOP) is False
        assert crud.get_shop(db, SHOP) is None



class TestTokenEncryption:
    def test_rotated_key_makes_shop_unusable(self, db, monkeypatch):
        crud.save_shop(db, SHOP, TOKEN)

        monkeypatch.setattr(settings, "encryption_key", "rotated-key")
        monkeypatch.setattr(encryption, "_fernet", None)

        with pytest.raises(ShopCredentialsInvalid) as exc_info:
            crud.get_shop(db, SHOP)

        assert isinstance(exc_info.value, ShopNotFound)
        assert "reinstall" in str(exc_info.value)

    def test_reinstall_after_rotation_restores_access(self, db, monkeypatch):
        crud.save_shop(db, SHOP, TOKEN)
        monkeypatch.setattr(settings, "encryption_key", "rotated-key")
        monkeypatch.setattr(encryption, "_fernet", None)

        crud.save_shop(db, SHOP, "shpat_reinstalled")

        assert crud.get_shop(db, SHOP).access_token == "shpat_reinstalled"

    def test_missing_key_is_a_configuration_error(self, monkeypatch):
        monkeypatch.setattr(settings, "encryption_key", None)
        monkeypatch.setattr(encryption, "_fernet", None)

        with pytest.raises(ConfigurationError):
            encryption.get_fernet()

class TestCampaignStatusUpdates:
    def test_record_is_created_lazily(self, db, session_factory):
        assert read_campaign(session_factory, SHOP, 1001) is None

        crud.update_order_campaign_status(
            db, SHOP, "1001", CampaignStatusUpdate(campaign_status=CampaignStatus.PROMISE_MET)
        )

        record = read_campaign(session_factory, SHOP, 1001)
        assert record.campaign_status == "Campaign Promise Met"
        assert record.refund_amount is None

    def test_unset_fields_are_left_unchanged(self, db, session_factory):
        crud.update_order_campaign_status(
            db, SHOP, "1001",
            CampaignStatusUpdate(
                campaign_status=CampaignStatus.PROMISE_MET,
                redeemed_code="LOYAL10",
                refund_amount="250.00",
                refund_transaction_id="5551",
            ),
        )
        crud.update_order_campaign_status(
            db, SHOP, "1001", CampaignStatusUpdate(restock_status=RestockStatus.PENDING)
        )
        crud.update_order_campaign_status(
            db, SHOP, "1001", CampaignStatusUpdate(campaign_status=CampaignStatus.COMPLETED)
        )

        record = read_campaign(session_factory, SHOP, 1001)
        assert record.campaign_status == "Campaign Completed"
        assert record.redeemed_code == "LOYAL10"
        assert record.refund_amount == "250.00"
        assert record.refund_transaction_id == "5551"
        assert record.restock_status == "Restock Pending"

    def test_explicit_none_clears_field(self, db, session_factory):
        crud.update_order_campaign_status(
            db, SHOP, "1001", CampaignStatusUpdate(redeemed_code="LOYAL10")
        )
        crud.update_order_campaign_status(db, SHOP, "1001", CampaignStatusUpdate(redeemed_code=None))

        assert read_campaign(session_factory, SHOP, 1001).redeemed_code is None

    def test_empty_update_does_not_create_record(self, db, session_factory):
        crud.update_order_campaign_status(db, SHOP, "1001", CampaignStatusUpdate())

        assert read_campaign(session_factory, SHOP, 1001) is None

    def test_records_are_scoped_per_shop(self, db):
        crud.update_order_campaign_status(
            db, SHOP, "1001", CampaignStatusUpdate(campaign_status=CampaignStatus.COMPLETED)
        )
        crud.update_order_campaign_status(
            db, "other.myshopify.com", "1001", CampaignStatusUpdate(campaign_status=CampaignStatus.PROMISE_MET)
        )

        [record] = crud.get_all_order_campaign_statuses(db, SHOP)
        assert record.campaign_status == "Campaign Completed"


class TestCampaignEvents:
    def test_events_newest_first(self, db):
        crud.add_campaign_event(db, "refund", "failed", "boom", shop_domain=SHOP, shopify_order_id=1001)
        crud.add_campaign_event(
            db, "refund", "succeeded", "ok", payload={"refund_id": "5551"},
            shop_domain=SHOP, shopify_order_id=1001,
        )
        crud.add_campaign_event(db, "refund", "succeeded", "other shop", shop_domain="x.myshopify.com")

        events = crud.list_campaign_events(db, SHOP)

        assert [e.status for e in events] == ["succeeded", "failed"]
        assert events[0].shopify_order_id == "1001"
        assert events[0].payload == '{"refund_id": "5551"}'

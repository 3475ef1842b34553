"""
Entitlement Deriver Tests
=========================

Tests for incremental grants, diff-based refresh, manual grants and the
active-entitlements read contract.
"""

import pytest
from sqlalchemy import func, select

from conftest import LIFETIME_SKU, make_txn, utc
from entitled.core.errors import EntitlementNotFoundError
from entitled.models.app import Product
from entitled.models.purchase import Purchase, PurchaseStatus, Subscription, SubscriptionStatus
from entitled.models.subscriber import GrantSource, SubscriberEntitlement
from entitled.services.entitlements import EntitlementDeriver
from entitled.services.ledger import PurchaseLedger
from entitled.services.subscribers import SubscriberService
from entitled.services.subscriptions import SubscriptionStateMachine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _subscriber(db_session, app_record, app_user_id="u1"):
    subscriber, _ = await SubscriberService(db_session).get_or_create(app_record, app_user_id)
    return subscriber


async def _subscribe(db_session, subscriber, product, **txn_overrides):
    """Apply a subscription transaction and record its ledger row."""
    txn = make_txn(**txn_overrides)
    change = await SubscriptionStateMachine(db_session).apply_transaction(subscriber, product, txn)
    await PurchaseLedger(db_session).record(subscriber, product, txn, change.subscription)
    await db_session.flush()
    return change.subscription


async def _grant(db_session, subscriber):
    return (
        await db_session.execute(
            select(SubscriberEntitlement)
            .where(SubscriberEntitlement.subscriber_id == subscriber.subscriber_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()


async def _count(db_session, model) -> int:
    return await db_session.scalar(select(func.count()).select_from(model))


def _miss_first_lookup(monkeypatch, service, name, empty):
    """Make the first ``service.name`` lookup find nothing, as when another writer inserts first."""
    lookup = getattr(service, name)
    calls = []

    async def racing_lookup(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return empty
        return await lookup(*args, **kwargs)

    monkeypatch.setattr(service, name, racing_lookup)


# ---------------------------------------------------------------------------
# Incremental grant
# ---------------------------------------------------------------------------

class TestGrantForProduct:
    """Tests for EntitlementDeriver.grant_for_product"""

    @pytest.mark.asyncio
    async def test_grants_linked_entitlements(self, db_session, app_record, monthly_product):
        subscriber = await _subscriber(db_session, app_record)
        expires = utc(days=30)

        granted = await EntitlementDeriver(db_session).grant_for_product(
            subscriber.subscriber_id, monthly_product, expires_date=expires,
        )

        assert granted == ["premium"]
        grant = await _grant(db_session, subscriber)
        assert grant.active is True
        assert grant.expires_date == expires
        assert grant.product_id == monthly_product.product_id
        assert grant.grant_source == GrantSource.STORE

    @pytest.mark.asyncio
    async def test_upserts_instead_of_duplicating(self, db_session, app_record, monthly_product):
        subscriber = await _subscriber(db_session, app_record)
        deriver = EntitlementDeriver(db_session)

        await deriver.grant_for_product(subscriber.subscriber_id, monthly_product, expires_date=utc(days=30))
        later = utc(days=60)
        again = await deriver.grant_for_product(subscriber.subscriber_id, monthly_product, expires_date=later)

        assert again == []
        grant = await _grant(db_session, subscriber)
        assert grant.expires_date == later

    @pytest.mark.asyncio
    async def test_active_manual_grant_is_not_overwritten(self, db_session, app_record, monthly_product):
        subscriber = await _subscriber(db_session, app_record)
        deriver = EntitlementDeriver(db_session)
        await deriver.grant_manual(subscriber, "premium", granted_by="support", reason="goodwill")

        await deriver.grant_for_product(subscriber.subscriber_id, monthly_product, expires_date=utc(days=30))

        grant = await _grant(db_session, subscriber)
        assert grant.grant_source == GrantSource.MANUAL
        assert grant.expires_date is None


# ---------------------------------------------------------------------------
# Full refresh
# ---------------------------------------------------------------------------

class TestRefresh:
    """Tests for EntitlementDeriver.refresh"""

    @pytest.mark.asyncio
    async def test_grants_from_active_subscription(self, db_session, app_record, monthly_product):
        subscriber = await _subscriber(db_session, app_record)
        sub = await _subscribe(db_session, subscriber, monthly_product)

        result = await EntitlementDeriver(db_session).refresh(subscriber.subscriber_id)

        assert result.granted == ["premium"]
        assert result.revoked == []
        grant = await _grant(db_session, subscriber)
        assert grant.subscription_id == sub.subscription_id
        assert grant.expires_date == sub.expires_date

    @pytest.mark.asyncio
    async def test_refresh_is_idempotent(self, db_session, app_record, monthly_product):
        subscriber = await _subscriber(db_session, app_record)
        await _subscribe(db_session, subscriber, monthly_product)
        deriver = EntitlementDeriver(db_session)

        await deriver.refresh(subscriber.subscriber_id)
        result = await deriver.refresh(subscriber.subscriber_id)

        assert result.changed is False

    @pytest.mark.asyncio
    async def test_revoked_subscription_deactivates_unexpired_grant(self, db_session, app_record, monthly_product):
        """A refund deactivates the grant even though the expiry is in the future."""
        subscriber = await _subscriber(db_session, app_record)
        sub = await _subscribe(db_session, subscriber, monthly_product)
        deriver = EntitlementDeriver(db_session)
        await deriver.refresh(subscriber.subscriber_id)

        await SubscriptionStateMachine(db_session).revoke(sub, "refunded")
        result = await deriver.refresh(subscriber.subscriber_id)

        assert result.revoked == ["premium"]
        grant = await _grant(db_session, subscriber)
        assert grant.active is False
        assert grant.expires_date > utc()

    @pytest.mark.asyncio
    async def test_grace_period_grants_until_grace_end(self, db_session, app_record, monthly_product):
        subscriber = await _subscriber(db_session, app_record)
        grace_end = utc(days=6)
        await _subscribe(
            db_session, subscriber, monthly_product,
            expires_date=utc(hours=-1),
            store_status=SubscriptionStatus.IN_GRACE_PERIOD,
            grace_period_expires_date=grace_end,
        )

        result = await EntitlementDeriver(db_session).refresh(subscriber.subscriber_id)

        assert result.granted == ["premium"]
        assert (await _grant(db_session, subscriber)).expires_date == grace_end

    @pytest.mark.asyncio
    async def test_billing_retry_grants_until_expiry(self, db_session, app_record, monthly_product):
        """The retry deadline bounds the store's charge attempts, not access."""
        subscriber = await _subscriber(db_session, app_record)
        sub = await _subscribe(
            db_session, subscriber, monthly_product,
            expires_date=utc(days=-10),
            store_status=SubscriptionStatus.IN_BILLING_RETRY,
        )

        await EntitlementDeriver(db_session).refresh(subscriber.subscriber_id)

        assert sub.billing_retry_expires_date > utc()
        assert await EntitlementDeriver(db_session).get_active_entitlements(subscriber.subscriber_id) == []
        grant = await _grant(db_session, subscriber)
        assert grant.expires_date == sub.expires_date

    @pytest.mark.asyncio
    async def test_billing_retry_keeps_a_later_grace_end(self, db_session, app_record, monthly_product):
        subscriber = await _subscriber(db_session, app_record)
        grace_end = utc(days=2)
        sub = await _subscribe(
            db_session, subscriber, monthly_product,
            expires_date=utc(days=-1),
            store_status=SubscriptionStatus.IN_BILLING_RETRY,
        )
        sub.grace_period_expires_date = grace_end
        await db_session.flush()

        result = await EntitlementDeriver(db_session).refresh(subscriber.subscriber_id)

        assert result.granted == ["premium"]
        assert (await _grant(db_session, subscriber)).expires_date == grace_end

    @pytest.mark.asyncio
    async def test_non_consumable_grants_without_expiry(self, db_session, app_record):
        subscriber = await _subscriber(db_session, app_record)
        lifetime = (
            await db_session.execute(select(Product).where(Product.store_product_id == LIFETIME_SKU))
        ).scalar_one()
        txn = make_txn(
            transaction_id="3000000001",
            original_transaction_id="3000000001",
            product_id=LIFETIME_SKU,
            expires_date=None,
            is_subscription=False,
            store_status=None,
            auto_renew_enabled=False,
        )
        await PurchaseLedger(db_session).record(subscriber, lifetime, txn)
        await db_session.flush()

        result = await EntitlementDeriver(db_session).refresh(subscriber.subscriber_id)

        assert result.granted == ["premium"]
        grant = await _grant(db_session, subscriber)
        assert grant.expires_date is None
        assert grant.product_id == lifetime.product_id

    @pytest.mark.asyncio
    async def test_non_expiring_source_wins(self, db_session, app_record, monthly_product):
        subscriber = await _subscriber(db_session, app_record)
        await _subscribe(db_session, subscriber, monthly_product)
        lifetime = (
            await db_session.execute(select(Product).where(Product.store_product_id == LIFETIME_SKU))
        ).scalar_one()
        await PurchaseLedger(db_session).record(
            subscriber,
            lifetime,
            make_txn(
                transaction_id="3000000001",
                original_transaction_id="3000000001",
                product_id=LIFETIME_SKU,
                expires_date=None,
                is_subscription=False,
                store_status=None,
            ),
        )
        await db_session.flush()

        await EntitlementDeriver(db_session).refresh(subscriber.subscriber_id)

        assert (await _grant(db_session, subscriber)).expires_date is None

    @pytest.mark.asyncio
    async def test_refunded_non_consumable_is_not_granted(self, db_session, app_record):
        subscriber = await _subscriber(db_session, app_record)
        lifetime = (
            await db_session.execute(select(Product).where(Product.store_product_id == LIFETIME_SKU))
        ).scalar_one()
        await PurchaseLedger(db_session).record(
            subscriber,
            lifetime,
            make_txn(
                transaction_id="3000000001",
                original_transaction_id="3000000001",
                product_id=LIFETIME_SKU,
                expires_date=None,
                is_subscription=False,
                store_status=None,
                status=PurchaseStatus.REFUNDED,
            ),
        )
        await db_session.flush()

        result = await EntitlementDeriver(db_session).refresh(subscriber.subscriber_id)

        assert result.granted == []

    @pytest.mark.asyncio
    async def test_manual_grant_survives_refresh(self, db_session, app_record):
        subscriber = await _subscriber(db_session, app_record)
        deriver = EntitlementDeriver(db_session)
        await deriver.grant_manual(subscriber, "premium", expires_date=utc(days=7), granted_by="support")

        result = await deriver.refresh(subscriber.subscriber_id)

        assert result.changed is False
        grant = await _grant(db_session, subscriber)
        assert grant.active is True
        assert grant.grant_source == GrantSource.MANUAL

    @pytest.mark.asyncio
    async def test_lapsed_grants_are_deactivated_without_revocation(self, db_session, app_record, monthly_product):
        """Grants past their expiry already lost access; refresh clears them quietly."""
        subscriber = await _subscriber(db_session, app_record)
        deriver = EntitlementDeriver(db_session)
        await deriver.grant_for_product(subscriber.subscriber_id, monthly_product, expires_date=utc(hours=-2))

        result = await deriver.refresh(subscriber.subscriber_id)

        assert result.revoked == []
        assert (await _grant(db_session, subscriber)).active is False

    @pytest.mark.asyncio
    async def test_expired_manual_grant_is_not_reported(self, db_session, app_record):
        subscriber = await _subscriber(db_session, app_record)
        deriver = EntitlementDeriver(db_session)
        await deriver.grant_manual(subscriber, "premium", expires_date=utc(days=-1), granted_by="support")

        result = await deriver.refresh(subscriber.subscriber_id)

        assert result.changed is False
        assert (await _grant(db_session, subscriber)).active is False


# ---------------------------------------------------------------------------
# Manual grants and read contract
# ---------------------------------------------------------------------------

class TestManualGrants:
    """Tests for grant_manual / revoke_manual / get_active_entitlements"""

    @pytest.mark.asyncio
    async def test_grant_and_revoke(self, db_session, app_record):
        subscriber = await _subscriber(db_session, app_record)
        deriver = EntitlementDeriver(db_session)

        grant, newly_active = await deriver.grant_manual(
            subscriber, "premium", granted_by="support", reason="beta tester",
            source=GrantSource.PROMOTIONAL,
        )
        assert newly_active is True
        assert grant.grant_reason == "beta tester"

        _, newly_active = await deriver.grant_manual(subscriber, "premium")
        assert newly_active is False

        assert await deriver.revoke_manual(subscriber, "premium") is True
        assert await deriver.revoke_manual(subscriber, "premium") is False

    @pytest.mark.asyncio
    async def test_unknown_entitlement(self, db_session, app_record):
        subscriber = await _subscriber(db_session, app_record)
        with pytest.raises(EntitlementNotFoundError):
            await EntitlementDeriver(db_session).grant_manual(subscriber, "gold")

    @pytest.mark.asyncio
    async def test_active_entitlements_excludes_expired(self, db_session, app_record, monthly_product):
        subscriber = await _subscriber(db_session, app_record)
        deriver = EntitlementDeriver(db_session)
        await deriver.grant_for_product(subscriber.subscriber_id, monthly_product, expires_date=utc(days=3))

        active = await deriver.get_active_entitlements(subscriber.subscriber_id)
        assert [e["identifier"] for e in active] == ["premium"]
        assert active[0]["display_name"] == "Premium"
        assert active[0]["product_identifier"] == "premium_monthly"

        grant = await _grant(db_session, subscriber)
        grant.expires_date = utc(seconds=-1)
        await db_session.flush()

        assert await deriver.get_active_entitlements(subscriber.subscriber_id) == []


# ---------------------------------------------------------------------------
# Concurrent inserts
# ---------------------------------------------------------------------------

class TestConcurrentInserts:
    """Tests for the unique-key recovery paths of the ledger, state machine and deriver"""

    @pytest.mark.asyncio
    async def test_ledger_updates_the_row_another_writer_inserted(
        self, db_session, app_record, monthly_product, monkeypatch,
    ):
        subscriber = await _subscriber(db_session, app_record)
        sub = await _subscribe(db_session, subscriber, monthly_product)
        ledger = PurchaseLedger(db_session)
        _miss_first_lookup(monkeypatch, ledger, "find", None)

        refund = make_txn(status=PurchaseStatus.REFUNDED, revocation_reason="refunded")
        result = await ledger.record(subscriber, monthly_product, refund, sub)
        await db_session.flush()

        assert result.created is False
        assert result.refunded_now is True
        assert result.purchase.status == PurchaseStatus.REFUNDED
        assert result.purchase.refund_reason == "refunded"
        assert await _count(db_session, Purchase) == 1

    @pytest.mark.asyncio
    async def test_state_machine_applies_renewal_to_the_existing_subscription(
        self, db_session, app_record, monthly_product, monkeypatch,
    ):
        subscriber = await _subscriber(db_session, app_record)
        sub = await _subscribe(db_session, subscriber, monthly_product)
        machine = SubscriptionStateMachine(db_session)
        _miss_first_lookup(monkeypatch, machine, "get_by_original_transaction_id", None)

        renewal = make_txn(transaction_id="2000000002", purchase_date=utc(), expires_date=utc(days=30))
        change = await machine.apply_transaction(subscriber, monthly_product, renewal)
        await db_session.flush()

        assert change.created is False
        assert change.subscription.subscription_id == sub.subscription_id
        assert change.subscription.latest_transaction_id == "2000000002"
        assert change.subscription.expires_date == renewal.expires_date
        assert await _count(db_session, Subscription) == 1

    @pytest.mark.asyncio
    async def test_deriver_extends_the_grant_another_writer_inserted(
        self, db_session, app_record, monthly_product, monkeypatch,
    ):
        subscriber = await _subscriber(db_session, app_record)
        deriver = EntitlementDeriver(db_session)
        await deriver.grant_for_product(subscriber.subscriber_id, monthly_product, expires_date=utc(days=30))
        _miss_first_lookup(monkeypatch, deriver, "_grants_by_entitlement", {})

        later = utc(days=60)
        granted = await deriver.grant_for_product(subscriber.subscriber_id, monthly_product, expires_date=later)

        # already active, so the other writer reported it
        assert granted == []
        grant = await _grant(db_session, subscriber)
        assert grant.expires_date == later
        assert await _count(db_session, SubscriberEntitlement) == 1

    @pytest.mark.asyncio
    async def test_deriver_reactivates_a_lapsed_grant_found_on_insert(
        self, db_session, app_record, monthly_product, monkeypatch,
    ):
        subscriber = await _subscriber(db_session, app_record)
        deriver = EntitlementDeriver(db_session)
        await deriver.grant_for_product(subscriber.subscriber_id, monthly_product, expires_date=utc(days=-1))
        _miss_first_lookup(monkeypatch, deriver, "_grants_by_entitlement", {})

        granted = await deriver.grant_for_product(
            subscriber.subscriber_id, monthly_product, expires_date=utc(days=30),
        )

        assert granted == ["premium"]
        assert await _count(db_session, SubscriberEntitlement) == 1

    @pytest.mark.asyncio
    async def test_deriver_keeps_a_manual_grant_found_on_insert(
        self, db_session, app_record, monthly_product, monkeypatch,
    ):
        subscriber = await _subscriber(db_session, app_record)
        deriver = EntitlementDeriver(db_session)
        await deriver.grant_manual(subscriber, "premium", granted_by="support", reason="goodwill")
        _miss_first_lookup(monkeypatch, deriver, "_grants_by_entitlement", {})

        granted = await deriver.grant_for_product(
            subscriber.subscriber_id, monthly_product, expires_date=utc(days=30),
        )

        assert granted == []
        grant = await _grant(db_session, subscriber)
        assert grant.grant_source == GrantSource.MANUAL
        assert grant.expires_date is None

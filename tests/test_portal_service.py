"""
Unit tests for PortalService (billing portal, cancel, reactivate, pause, resume)
"""
from datetime import datetime, timedelta

import pytest

from backend.utils.errors import ConflictError, InvalidArgumentError, NotFoundError
from crud.subscription import SubscriptionRepository
from database_models import Subscription, utc_now
from services.portal_service import PortalService, add_months
from services.status_service import project_status

RETURN_URL = "https://app.example.com/account"


async def _store_active(test_db, billing_client, stripe_subscription):
    billing_client.subscriptions["sub_1"] = stripe_subscription(
        subscription_id="sub_1", customer="cus_1", user_id="user-1"
    )
    return await SubscriptionRepository(test_db).upsert_record(Subscription(
        user_id="user-1",
        plan_type="PLUS",
        status="ACTIVE",
        external_subscription_id="sub_1",
        external_customer_id="cus_1",
    ))


@pytest.mark.asyncio
async def test_portal_url_is_returned_unmodified(test_db, billing_client, stripe_subscription):
    await _store_active(test_db, billing_client, stripe_subscription)
    service = PortalService(SubscriptionRepository(test_db), billing_client)

    url = await service.create_portal_session("user-1", RETURN_URL)

    assert url == "https://billing.stripe.test/p/session/cus_1"
    assert billing_client.last_call("create_portal_session") == {"customer_id": "cus_1", "return_url": RETURN_URL}


@pytest.mark.asyncio
async def test_portal_without_billing_account_is_not_found(test_db, billing_client):
    service = PortalService(SubscriptionRepository(test_db), billing_client)

    with pytest.raises(NotFoundError):
        await service.create_portal_session("user-1", RETURN_URL)
    with pytest.raises(InvalidArgumentError):
        await service.create_portal_session("user-1", "")

    assert billing_client.calls == []


@pytest.mark.asyncio
async def test_cancel_at_period_end_keeps_plus(test_db, billing_client, stripe_subscription):
    await _store_active(test_db, billing_client, stripe_subscription)
    service = PortalService(SubscriptionRepository(test_db), billing_client)

    record = await service.cancel_subscription("user-1")

    assert billing_client.last_call("cancel_subscription") == {"subscription_id": "sub_1", "immediately": False}
    assert record.status == "ACTIVE"
    assert record.cancel_at_period_end is True
    assert record.auto_renew is False
    assert project_status(record).is_plus is True


@pytest.mark.asyncio
async def test_cancel_immediately_ends_plus(test_db, billing_client, stripe_subscription):
    await _store_active(test_db, billing_client, stripe_subscription)
    service = PortalService(SubscriptionRepository(test_db), billing_client)

    record = await service.cancel_subscription("user-1", immediately=True)

    assert record.status == "CANCELLED"
    assert record.canceled_at is not None
    assert project_status(record).is_plus is False


@pytest.mark.asyncio
async def test_reactivate_withdraws_scheduled_cancellation(test_db, billing_client, stripe_subscription):
    await _store_active(test_db, billing_client, stripe_subscription)
    service = PortalService(SubscriptionRepository(test_db), billing_client)
    await service.cancel_subscription("user-1")

    record = await service.reactivate_subscription("user-1")

    assert record.cancel_at_period_end is False
    assert record.auto_renew is True
    assert billing_client.call_names() == ["cancel_subscription", "reactivate_subscription"]


@pytest.mark.asyncio
async def test_cancel_without_subscription_is_not_found(test_db, billing_client):
    service = PortalService(SubscriptionRepository(test_db), billing_client)

    with pytest.raises(NotFoundError):
        await service.cancel_subscription("user-1")
    assert billing_client.calls == []


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2026, 1, 31, 12, 0), 1) == datetime(2026, 2, 28, 12, 0)
    assert add_months(datetime(2026, 11, 15), 3) == datetime(2027, 2, 15)
    assert add_months(datetime(2027, 12, 31), 2) == datetime(2028, 2, 29)


@pytest.mark.asyncio
async def test_pause_stops_plus_until_resumed(test_db, billing_client, stripe_subscription):
    await _store_active(test_db, billing_client, stripe_subscription)
    service = PortalService(SubscriptionRepository(test_db), billing_client)

    record = await service.pause_subscription("user-1", "2_months")

    pause_call = billing_client.last_call("pause_subscription")
    assert pause_call["subscription_id"] == "sub_1"
    assert pause_call["resumes_at"] - utc_now() > timedelta(days=58)
    assert record.status == "INACTIVE"
    assert record.collection_paused is True
    assert record.pause_resumes_at is not None
    assert project_status(record).is_plus is False

    with pytest.raises(ConflictError):
        await service.pause_subscription("user-1", "1_month")

    record = await service.resume_subscription("user-1")

    assert record.status == "ACTIVE"
    assert record.collection_paused is False
    assert record.pause_resumes_at is None
    assert project_status(record).is_plus is True
    assert billing_client.call_names() == ["pause_subscription", "resume_subscription"]


@pytest.mark.asyncio
async def test_pause_rejects_bad_duration_and_non_active_subscription(test_db, billing_client, stripe_subscription):
    record = await _store_active(test_db, billing_client, stripe_subscription)
    service = PortalService(SubscriptionRepository(test_db), billing_client)

    with pytest.raises(InvalidArgumentError):
        await service.pause_subscription("user-1", "forever")

    record.status = "PAST_DUE"
    await SubscriptionRepository(test_db).upsert_record(record)
    with pytest.raises(InvalidArgumentError):
        await service.pause_subscription("user-1", "1_month")

    assert billing_client.calls == []


@pytest.mark.asyncio
async def test_resume_without_pause_is_invalid(test_db, billing_client, stripe_subscription):
    await _store_active(test_db, billing_client, stripe_subscription)
    service = PortalService(SubscriptionRepository(test_db), billing_client)

    with pytest.raises(InvalidArgumentError):
        await service.resume_subscription("user-1")
    assert billing_client.calls == []

import pytest
from sqlalchemy import select

from models.match_report import MatchReport
from models.payment_record import PaymentRecord
from services.access_token import PAYMENT_TOKEN, verify_access_token
from services.checkout import create_checkout, get_pricing
from services.errors import NotFoundError, ProviderNotConfigured, ProviderUnavailable, ValidationError
from fakes import FakePaymentProvider, seed_catalog, seed_request, seed_supplier


@pytest.mark.asyncio
async def test_pricing_map_follows_catalog(db):
    await seed_catalog(db)

    pricing = await get_pricing(db)

    assert list(pricing) == [
        "one-time",
        "starter_monthly",
        "starter_annual",
        "professional_monthly",
        "professional_annual",
        "extra_credit",
    ]
    assert pricing["one-time"]["amount_cents"] == 4900
    assert pricing["professional_annual"]["amount_cents"] == 218900
    assert pricing["professional_annual"]["interval"] == "year"
    assert pricing["extra_credit"]["interval"] is None


@pytest.mark.asyncio
async def test_checkout_persists_pending_record_and_metadata(db):
    await seed_catalog(db)
    await seed_supplier(db)
    buyer_request = await seed_request(db)
    provider = FakePaymentProvider()

    result = await create_checkout(
        db, provider, request_id=buyer_request.id, plan_type="starter_monthly", email=" Buyer@Example.com "
    )

    assert result["plan_type"] == "starter_monthly"
    assert result["amount"] == 79.0
    params = provider.created[0]
    assert params["mode"] == "subscription"
    assert params["client_reference_id"] == buyer_request.id
    assert params["line_items"][0]["price_data"]["recurring"] == {"interval": "month"}
    metadata = params["metadata"]
    assert metadata["requestId"] == buyer_request.id
    assert metadata["planType"] == "starter_monthly"
    assert metadata["email"] == "buyer@example.com"
    assert metadata["isTopUp"] == "false"
    assert verify_access_token(metadata["accessToken"], "buyer@example.com", buyer_request.id, PAYMENT_TOKEN).valid

    record = await db.get(PaymentRecord, result["payment_record_id"])
    assert record.status == "pending"
    assert record.provider_session_id == result["session_id"]
    assert record.amount_cents == 7900
    report = (await db.execute(select(MatchReport).where(MatchReport.request_id == buyer_request.id))).scalar_one()
    assert report.status == "pending"
    assert record.match_report_id == report.id
    assert report.preview_json["matched_count"] == 1


@pytest.mark.asyncio
async def test_top_up_quantity_bounds(db):
    await seed_catalog(db)
    provider = FakePaymentProvider()

    result = await create_checkout(db, provider, request_id="general", plan_type="extra_credit", email="a@b.co", quantity=4)
    assert result["amount"] == 40.0
    assert provider.created[0]["line_items"][0]["quantity"] == 4
    assert provider.created[0]["metadata"]["isTopUp"] == "true"

    with pytest.raises(ValidationError):
        await create_checkout(db, provider, request_id="general", plan_type="extra_credit", email="a@b.co", quantity=101)


@pytest.mark.asyncio
async def test_checkout_validation_errors(db):
    await seed_catalog(db)
    provider = FakePaymentProvider()

    with pytest.raises(ValidationError, match="Invalid email address"):
        await create_checkout(db, provider, request_id="general", plan_type="extra_credit", email="not-an-email")
    with pytest.raises(ValidationError, match="A request is required"):
        await create_checkout(db, provider, request_id="general", plan_type="one-time", email="a@b.co")
    with pytest.raises(ValidationError, match="Invalid plan type"):
        await create_checkout(db, provider, request_id="missing", plan_type="gold", email="a@b.co")
    with pytest.raises(ValidationError):
        await create_checkout(db, provider, request_id="general", plan_type="managed_service", email="a@b.co")
    with pytest.raises(NotFoundError):
        await create_checkout(db, provider, request_id="missing", plan_type="one-time", email="a@b.co")
    assert provider.created == []


@pytest.mark.asyncio
async def test_enterprise_routes_to_sales(db):
    result = await create_checkout(db, None, request_id="general", plan_type="enterprise", email="a@b.co")
    assert result["contact_sales"] is True


@pytest.mark.asyncio
async def test_provider_failures(db):
    await seed_catalog(db)
    buyer_request = await seed_request(db)

    with pytest.raises(ProviderNotConfigured):
        await create_checkout(db, None, request_id=buyer_request.id, plan_type="one-time", email="buyer@example.com")

    provider = FakePaymentProvider()
    provider.unavailable = True
    with pytest.raises(ProviderUnavailable, match="Payment could not be completed"):
        await create_checkout(db, provider, request_id=buyer_request.id, plan_type="one-time", email="buyer@example.com")
    records = (await db.execute(select(PaymentRecord))).scalars().all()
    assert records == []


@pytest.mark.asyncio
async def test_already_paid_request_is_unlocked_without_new_session(db):
    await seed_catalog(db)
    buyer_request = await seed_request(db)
    db.add(
        PaymentRecord(
            request_id=buyer_request.id,
            email="buyer@example.com",
            plan_type="one-time",
            amount_cents=4900,
            status="succeeded",
        )
    )
    await db.commit()
    provider = FakePaymentProvider()

    result = await create_checkout(db, provider, request_id=buyer_request.id, plan_type="one-time", email="buyer@example.com")

    assert result["already_unlocked"] is True
    assert result["status"] == "unlocked"
    assert provider.created == []


@pytest.mark.asyncio
async def test_top_up_for_unknown_request_opens_session_without_report(db):
    await seed_catalog(db)
    provider = FakePaymentProvider()

    result = await create_checkout(
        db, provider, request_id="req-elsewhere", plan_type="extra_credit", email="buyer@example.com", quantity=2
    )

    assert result["amount"] == 20.0
    metadata = provider.created[0]["metadata"]
    assert metadata["requestId"] == "req-elsewhere"
    assert metadata["matchReportId"] == ""
    record = await db.get(PaymentRecord, result["payment_record_id"])
    assert record.request_id == "req-elsewhere"
    assert record.match_report_id is None
    assert record.quantity == 2
    assert (await db.execute(select(MatchReport))).scalars().all() == []

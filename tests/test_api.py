from decimal import Decimal

import pytest

from conftest import open_session


@pytest.mark.asyncio
async def test_exit_and_pay_cash(client, db_session, parking):
    session = await open_session(db_session, spot_id=parking["spot"].id)

    response = await client.post("/ps/api/v1/exits/", json={"plate_number": "AB123CD"})
    assert response.status_code == 200
    body = response.json()
    assert Decimal(body["amount"]) == Decimal("650")
    assert body["basis"] == "hourly"
    assert body["status"] == "fee_computed"

    response = await client.post(f"/ps/api/v1/exits/{session.id}/method", json={"method": "cash"})
    assert response.status_code == 200
    assert response.json()["status"] == "settled"

    history = await client.get("/ps/api/v1/history/", params={"plate_number": "AB123CD"})
    assert history.status_code == 200
    entry = history.json()["history"][0]
    assert entry["is_active"] is False
    assert entry["settlements"][0]["method"] == "cash"
    assert entry["settlements"][0]["amount"] == 650.0


@pytest.mark.asyncio
async def test_unknown_plate_is_404(client, parking):
    response = await client.post("/ps/api/v1/exits/", json={"plate_number": "NOPE"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_qr_webhook_flow(client, db_session, parking):
    session = await open_session(db_session, spot_id=parking["spot"].id)
    await client.post("/ps/api/v1/exits/", json={"plate_number": "AB123CD"})

    response = await client.post(f"/ps/api/v1/exits/{session.id}/method", json={"method": "qr"})
    assert response.status_code == 200
    pending = response.json()
    assert pending["status"] == "awaiting_external_confirmation"

    webhook = {"external_reference": pending["external_reference"], "status": "authorized"}
    first = await client.post("/ps/api/v1/payments/webhook", json=webhook)
    second = await client.post("/ps/api/v1/payments/webhook", json=webhook)

    assert first.json()["status"] == "settled"
    assert second.status_code == 200
    assert second.json()["status"] == "settled"


@pytest.mark.asyncio
async def test_webhook_for_unknown_reference_is_ignored(client, parking):
    response = await client.post("/ps/api/v1/payments/webhook",
                                 json={"external_reference": "pref-404", "status": "approved"})
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_provider_failure_is_502(client, db_session, parking, gateway):
    session = await open_session(db_session, spot_id=parking["spot"].id)
    await client.post("/ps/api/v1/exits/", json={"plate_number": "AB123CD"})
    gateway.failures = 5

    response = await client.post(f"/ps/api/v1/exits/{session.id}/method", json={"method": "link"})

    assert response.status_code == 502


@pytest.mark.asyncio
async def test_unconfigured_method_is_refused(client, db_session, parking, config):
    config.provider_token = ""
    session = await open_session(db_session, spot_id=parking["spot"].id)
    await client.post("/ps/api/v1/exits/", json={"plate_number": "AB123CD"})

    response = await client.post(f"/ps/api/v1/exits/{session.id}/method", json={"method": "qr"})

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_transfer_then_confirm(client, db_session, parking):
    session = await open_session(db_session, spot_id=parking["spot"].id)
    await client.post("/ps/api/v1/exits/", json={"plate_number": "AB123CD"})

    handoff = await client.post(f"/ps/api/v1/exits/{session.id}/method", json={"method": "transfer"})
    assert handoff.json()["transfer_details"]["bank"] == "Banco Test"

    early = await client.post(f"/ps/api/v1/exits/{session.id}/mark-paid")
    assert early.status_code == 409

    confirmed = await client.post(f"/ps/api/v1/exits/{session.id}/confirm-transfer")
    assert confirmed.json()["status"] == "settled"


@pytest.mark.asyncio
async def test_cancel_exit(client, db_session, parking):
    session = await open_session(db_session, spot_id=parking["spot"].id)
    await client.post("/ps/api/v1/exits/", json={"plate_number": "AB123CD"})

    response = await client.delete(f"/ps/api/v1/exits/{session.id}")
    assert response.json()["status"] == "aborted"

    again = await client.delete(f"/ps/api/v1/exits/{session.id}")
    assert again.json()["status"] == "nothing_to_cancel"


@pytest.mark.asyncio
async def test_payment_methods(client, config):
    config.transfer_alias = ""
    config.transfer_cbu = ""

    response = await client.get("/ps/api/v1/payment-methods/")

    enabled = {item["method"]: item["enabled"] for item in response.json()}
    assert enabled == {"cash": True, "transfer": False, "qr": True, "link": True}


@pytest.mark.asyncio
async def test_history_for_unknown_plate_is_404(client, parking):
    response = await client.get("/ps/api/v1/history/", params={"plate_number": "NOPE"})
    assert response.status_code == 404


def test_app_and_engine_share_one_config():
    from parking_settlement import database, main

    assert main.config is database.config
    assert main.orchestrator.config is database.config

import pytest

from services.session_token import create_session_token


TEST_ACCOUNT_ID = "credits-router-account"
OTHER_ACCOUNT_ID = "credits-router-other"
ADMIN_ACCOUNT_ID = "credits-router-admin"
TEST_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TEST_ACCOUNT_ID)['token']}"}
OTHER_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(OTHER_ACCOUNT_ID)['token']}"}
ADMIN_AUTH_HEADER = {
    "Authorization": f"Bearer {create_session_token(ADMIN_ACCOUNT_ID, role='admin')['token']}"
}


async def _onboard(client, headers=TEST_AUTH_HEADER, **body):
    resp = await client.post("/accounts", json=body or {"email": "owner@example.com"}, headers=headers)
    assert resp.status_code == 200
    return resp.json()


async def _grant(client, amount, account_id=TEST_ACCOUNT_ID, note=None):
    return await client.post(
        "/admin/credits/adjust",
        json={"account_id": account_id, "amount": amount, "note": note},
        headers=ADMIN_AUTH_HEADER,
    )


@pytest.mark.asyncio
async def test_onboarding_creates_empty_account(integration_client):
    payload = await _onboard(integration_client, company_name="Acme Content")
    assert payload["id"] == TEST_ACCOUNT_ID
    assert payload["balance"] == 0
    assert payload["total_used"] == 0

    balance_resp = await integration_client.get("/credits/balance", headers=TEST_AUTH_HEADER)
    assert balance_resp.status_code == 200
    assert balance_resp.json() == {"account_id": TEST_ACCOUNT_ID, "balance": 0.0, "total_used": 0.0}


@pytest.mark.asyncio
async def test_requests_without_session_are_rejected(integration_client):
    resp = await integration_client.get("/credits/balance")
    assert resp.status_code == 401

    resp = await integration_client.get("/credits/balance", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_debit_flow_and_insufficient_credits(integration_client):
    await _onboard(integration_client)
    grant_resp = await _grant(integration_client, 12, note="trial")
    assert grant_resp.status_code == 200
    assert grant_resp.json()["new_balance"] == 12
    assert grant_resp.json()["message"] == "Added 12 credits to owner@example.com"

    debit_resp = await integration_client.post(
        "/credits/debit",
        json={"kind": "blog_generation", "context": {"context": "blog", "blog_id": 3, "blog_title": "Q3"}},
        headers=TEST_AUTH_HEADER,
    )
    assert debit_resp.status_code == 200
    debit_payload = debit_resp.json()
    assert debit_payload["success"] is True
    assert debit_payload["new_balance"] == 2
    assert isinstance(debit_payload["transaction_id"], int)

    short_resp = await integration_client.post(
        "/credits/debit",
        json={"account_id": TEST_ACCOUNT_ID, "kind": "image_generation", "cost": 5},
        headers=TEST_AUTH_HEADER,
    )
    assert short_resp.status_code == 402
    detail = short_resp.json()["detail"]
    assert detail["error"] == "insufficient_credits"
    assert detail["credits_required"] == 5
    assert detail["current_credits"] == 2

    history_resp = await integration_client.get("/credits/transactions", headers=TEST_AUTH_HEADER)
    assert history_resp.status_code == 200
    history = history_resp.json()
    assert history["total_count"] == 2
    assert [item["kind"] for item in history["items"]] == ["blog_generation", "admin_add"]
    assert history["items"][0]["metadata"] == {"context": "blog", "blog_id": 3, "blog_title": "Q3"}


@pytest.mark.asyncio
async def test_debit_validation_errors(integration_client):
    await _onboard(integration_client)
    await _grant(integration_client, 5)

    admin_kind = await integration_client.post(
        "/credits/debit", json={"kind": "admin_add"}, headers=TEST_AUTH_HEADER
    )
    assert admin_kind.status_code == 422

    wrong_context = await integration_client.post(
        "/credits/debit",
        json={"kind": "blog_generation", "context": {"context": "image", "image_id": 1}},
        headers=TEST_AUTH_HEADER,
    )
    assert wrong_context.status_code == 422

    zero_cost = await integration_client.post(
        "/credits/debit", json={"kind": "image_edit", "cost": 0}, headers=TEST_AUTH_HEADER
    )
    assert zero_cost.status_code == 422

    unknown_kind = await integration_client.post(
        "/credits/debit", json={"kind": "video_generation"}, headers=TEST_AUTH_HEADER
    )
    assert unknown_kind.status_code == 422

    balance_resp = await integration_client.get("/credits/balance", headers=TEST_AUTH_HEADER)
    assert balance_resp.json()["balance"] == 5


@pytest.mark.asyncio
async def test_cross_account_debit_is_forbidden(integration_client):
    await _onboard(integration_client)
    await _onboard(integration_client, headers=OTHER_AUTH_HEADER, email="other@example.com")
    await _grant(integration_client, 20)

    resp = await integration_client.post(
        "/credits/debit",
        json={"account_id": TEST_ACCOUNT_ID, "kind": "image_edit"},
        headers=OTHER_AUTH_HEADER,
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_debit_for_unknown_account_is_not_found(integration_client):
    resp = await integration_client.post(
        "/credits/debit", json={"kind": "image_edit"}, headers=TEST_AUTH_HEADER
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_summary_reports_usage(integration_client):
    await _onboard(integration_client)
    await _grant(integration_client, 30)
    for kind in ("blog_generation", "image_generation", "image_generation", "image_edit"):
        resp = await integration_client.post("/credits/debit", json={"kind": kind}, headers=TEST_AUTH_HEADER)
        assert resp.status_code == 200

    summary_resp = await integration_client.get("/credits/summary", headers=TEST_AUTH_HEADER)
    assert summary_resp.status_code == 200
    summary = summary_resp.json()
    assert summary["balance"] == 16
    assert summary["total_used"] == 14
    assert len(summary["transactions"]) == 5
    assert summary["transactions"][0]["kind"] == "image_edit"
    usage = {row["kind"]: row for row in summary["usage_by_kind"]}
    assert usage["blog_generation"] == {"kind": "blog_generation", "total_amount": 10, "count": 1}
    assert usage["image_generation"]["total_amount"] == 2
    assert usage["image_generation"]["count"] == 2
    assert "admin_add" not in usage
    assert len(summary["daily_usage"]) == 1
    assert summary["daily_usage"][0]["total_used"] == 14
    assert summary["credit_costs"] == {"blog_generation": 10, "image_generation": 1, "image_edit": 2}


@pytest.mark.asyncio
async def test_admin_endpoints_require_admin_role(integration_client):
    await _onboard(integration_client)
    resp = await integration_client.post(
        "/admin/credits/adjust",
        json={"account_id": TEST_ACCOUNT_ID, "amount": 100},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 403

    resp = await integration_client.get("/admin/credits/accounts", headers=TEST_AUTH_HEADER)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_admin_adjust_rules(integration_client):
    await _onboard(integration_client)
    assert (await _grant(integration_client, 20)).status_code == 200

    zero = await _grant(integration_client, 0)
    assert zero.status_code == 422

    overdraw = await _grant(integration_client, -30)
    assert overdraw.status_code == 422
    assert overdraw.json()["detail"]["error"] == "resulting_balance_negative"
    assert overdraw.json()["detail"]["current_credits"] == 20

    deduct = await _grant(integration_client, -5, note="duplicate grant")
    assert deduct.status_code == 200
    assert deduct.json()["new_balance"] == 15
    assert deduct.json()["message"] == "Deducted 5 credits from owner@example.com"

    missing = await _grant(integration_client, 5, account_id="nobody")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_admin_account_listing_refund_and_audit(integration_client):
    await _onboard(integration_client)
    await _grant(integration_client, 12)
    debit_resp = await integration_client.post(
        "/credits/debit", json={"kind": "blog_generation"}, headers=TEST_AUTH_HEADER
    )
    transaction_id = debit_resp.json()["transaction_id"]

    refund_resp = await integration_client.post(
        f"/admin/credits/transactions/{transaction_id}/refund",
        json={"reason": "generation failed upstream"},
        headers=ADMIN_AUTH_HEADER,
    )
    assert refund_resp.status_code == 200
    assert refund_resp.json()["new_balance"] == 12

    duplicate = await integration_client.post(
        f"/admin/credits/transactions/{transaction_id}/refund", headers=ADMIN_AUTH_HEADER
    )
    assert duplicate.status_code == 422
    assert duplicate.json()["detail"]["error"] == "not_refundable"

    listing = await integration_client.get("/admin/credits/accounts", headers=ADMIN_AUTH_HEADER)
    assert listing.status_code == 200
    accounts = listing.json()["accounts"]
    assert [account["id"] for account in accounts] == [TEST_ACCOUNT_ID]
    assert accounts[0]["balance"] == 12
    assert accounts[0]["total_used"] == 10
    assert [tx["kind"] for tx in accounts[0]["recent_transactions"]] == ["refund", "blog_generation", "admin_add"]

    audit_resp = await integration_client.get(
        f"/admin/credits/accounts/{TEST_ACCOUNT_ID}/audit", headers=ADMIN_AUTH_HEADER
    )
    assert audit_resp.status_code == 200
    audit = audit_resp.json()
    assert audit["consistent"] is True
    assert audit["replayed_balance"] == 12
    assert audit["transaction_count"] == 3

    delete_resp = await integration_client.delete(f"/admin/accounts/{TEST_ACCOUNT_ID}", headers=ADMIN_AUTH_HEADER)
    assert delete_resp.status_code == 200
    gone = await integration_client.get("/credits/summary", headers=TEST_AUTH_HEADER)
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_sub_precision_amounts_are_rejected(integration_client):
    await _onboard(integration_client)
    await _grant(integration_client, 12)

    tiny_cost = await integration_client.post(
        "/credits/debit", json={"kind": "image_edit", "cost": "0.00001"}, headers=TEST_AUTH_HEADER
    )
    assert tiny_cost.status_code == 422

    fine_grant = await _grant(integration_client, "0.12345")
    assert fine_grant.status_code == 422

    balance_resp = await integration_client.get("/credits/balance", headers=TEST_AUTH_HEADER)
    assert balance_resp.json()["balance"] == 12

    history_resp = await integration_client.get("/credits/transactions", headers=TEST_AUTH_HEADER)
    assert history_resp.json()["total_count"] == 1


@pytest.mark.asyncio
async def test_usage_report_leaves_out_refunded_debits_and_admin_deductions(integration_client):
    await _onboard(integration_client)
    await _grant(integration_client, 30)
    blog = await integration_client.post(
        "/credits/debit", json={"kind": "blog_generation"}, headers=TEST_AUTH_HEADER
    )
    await integration_client.post("/credits/debit", json={"kind": "image_edit"}, headers=TEST_AUTH_HEADER)
    await _grant(integration_client, -3)

    refund_resp = await integration_client.post(
        f"/admin/credits/transactions/{blog.json()['transaction_id']}/refund", headers=ADMIN_AUTH_HEADER
    )
    assert refund_resp.status_code == 200

    summary = (await integration_client.get("/credits/summary", headers=TEST_AUTH_HEADER)).json()
    assert summary["balance"] == 25
    assert summary["usage_by_kind"] == [{"kind": "image_edit", "total_amount": 2, "count": 1}]
    assert [row["total_used"] for row in summary["daily_usage"]] == [2]


@pytest.mark.asyncio
async def test_onboarding_twice_returns_the_same_account(integration_client):
    first = await _onboard(integration_client)
    second = await _onboard(integration_client, email="changed@example.com")
    assert second["id"] == first["id"]
    assert second["email"] == "owner@example.com"

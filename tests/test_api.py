"""Tests for the FastAPI endpoints."""

import hashlib
import hmac
import json

import pytest
from httpx import ASGITransport, AsyncClient

from phonevault.api.app import create_app, status_for
from phonevault.errors import (
    AlreadyClaimed,
    AttemptsExhausted,
    ClaimNotFunded,
    ClaimTransferFailed,
    InvalidPhoneNumber,
    NonceRaceExhausted,
    StaleNonce,
    TokenExpired,
    TokenNotFound,
)

from tests.conftest import ALICE, BOB, TOKEN

ADMIN = {"X-Admin-Token": "test-admin-token"}
KEY = {"public_key_x": "0x1234", "public_key_y": "0x5678"}


@pytest.fixture
async def client(services):
    """Create async test client over the test services."""
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def register(client, delivery, phone=ALICE):
    response = await client.post("/api/v1/otp", json={"phone": phone})
    assert response.status_code == 200
    return await client.post(
        "/api/v1/otp/verify",
        json={"phone": phone, "code": delivery.last_code(phone), **KEY},
    )


def sign(body: bytes, secret: str = "test-webhook-secret") -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestErrorMapping:

    @pytest.mark.parametrize(
        "error,status_code",
        [
            (InvalidPhoneNumber(), 400),
            (TokenNotFound(), 404),
            (TokenExpired(), 410),
            (AlreadyClaimed(), 409),
            (ClaimNotFunded(), 409),
            (AttemptsExhausted(), 409),
            (StaleNonce(), 422),
            (NonceRaceExhausted(), 503),
            (ClaimTransferFailed(), 502),
        ],
    )
    def test_status_for(self, error, status_code):
        assert status_for(error) == status_code


class TestHealthEndpoints:

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "phonevault"}

    @pytest.mark.asyncio
    async def test_detailed_health_redacts(self, client):
        response = await client.get("/health/detailed")

        assert response.status_code == 200
        data = response.json()
        assert "environment" in data["config"]
        assert "test-admin-token" not in response.text

    @pytest.mark.asyncio
    async def test_status(self, client):
        response = await client.get("/status")

        assert response.status_code == 200
        assert response.json()["database"] == "ok"


class TestOtpEndpoints:

    @pytest.mark.asyncio
    async def test_request_otp(self, client, delivery):
        response = await client.post("/api/v1/otp", json={"phone": ALICE})

        assert response.status_code == 200
        data = response.json()
        assert data["phone"] == ALICE
        assert data["expires_in"] == 300
        assert delivery.send_count == 1

    @pytest.mark.asyncio
    async def test_request_otp_normalizes_local_format(self, client, delivery):
        response = await client.post("/api/v1/otp", json={"phone": "06 12 34 56 78"})

        assert response.status_code == 200
        assert response.json()["phone"] == ALICE
        assert delivery.last_code(ALICE) is not None

    @pytest.mark.asyncio
    async def test_invalid_phone(self, client):
        response = await client.post("/api/v1/otp", json={"phone": "hello"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_phone_number"

    @pytest.mark.asyncio
    async def test_verify_registers(self, client, delivery, deriver):
        response = await register(client, delivery)

        assert response.status_code == 200
        data = response.json()
        assert data["address"] == deriver.derive_address_hex(ALICE)
        assert data["status"] == "registered"

        user = await client.get(f"/api/v1/users/{ALICE}")
        assert user.json()["status"] == "registered"

    @pytest.mark.asyncio
    async def test_verify_wrong_code(self, client, delivery):
        await client.post("/api/v1/otp", json={"phone": ALICE})
        code = delivery.last_code(ALICE)
        wrong = str((int(code) + 1) % 10**6).zfill(6)

        response = await client.post(
            "/api/v1/otp/verify", json={"phone": ALICE, "code": wrong, **KEY}
        )

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_code"

    @pytest.mark.asyncio
    async def test_register_twice(self, client, delivery):
        await register(client, delivery)
        response = await register(client, delivery)

        assert response.status_code == 409
        assert response.json()["error"] == "already_registered"

    @pytest.mark.asyncio
    async def test_unregistered_user_has_address(self, client, deriver):
        response = await client.get(f"/api/v1/users/{BOB}")

        assert response.status_code == 200
        assert response.json() == {
            "phone": BOB,
            "address": deriver.derive_address_hex(BOB),
            "status": "unregistered",
            "deploy_tx_hash": None,
        }


class TestClaimEndpoints:

    @pytest.fixture
    def funded(self, chain, deriver):
        chain.fund(TOKEN, deriver.derive_address(ALICE), 1000)
        return chain

    async def create(self, client, amount="100", nonce="0x1"):
        return await client.post(
            "/api/v1/claims",
            json={
                "creator_phone": ALICE,
                "amount": amount,
                "outside_nonce": nonce,
                "signature": ["0x1", "0x2"],
            },
        )

    @pytest.mark.asyncio
    async def test_create_get_redeem(self, client, funded, deriver):
        response = await self.create(client)
        assert response.status_code == 200
        assert response.json()["funding_status"] == "funded"
        token = response.json()["token"]

        status = await client.get(f"/api/v1/claims/{token}")
        assert status.json()["status"] == "unclaimed"
        assert status.json()["amount"] == "100"

        redeemed = await client.post(
            f"/api/v1/claims/{token}/redeem", json={"recipient_phone": BOB}
        )
        assert redeemed.status_code == 200
        assert redeemed.json()["address"] == deriver.derive_address_hex(BOB)

        again = await client.post(
            f"/api/v1/claims/{token}/redeem", json={"recipient_phone": BOB}
        )
        assert again.status_code == 409
        assert again.json()["error"] == "already_claimed"

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, client, funded):
        response = await self.create(client, amount="5000")

        assert response.status_code == 422
        assert response.json()["error"] == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_invalid_amount(self, client, funded):
        response = await self.create(client, amount="lots")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_token(self, client):
        response = await client.get("/api/v1/claims/nope")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_admin_retry_requires_token(self, client, funded):
        token = (await self.create(client)).json()["token"]

        response = await client.post(f"/admin/claims/{token}/retry")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_admin_retry_after_failed_payout(self, client, funded):
        token = (await self.create(client)).json()["token"]
        funded.revert_reasons = ["ERC20: transfer paused"]

        failed = await client.post(
            f"/api/v1/claims/{token}/redeem", json={"recipient_phone": BOB}
        )
        assert failed.status_code == 502

        response = await client.post(f"/admin/claims/{token}/retry", headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["transfer_status"] == "submitted"


class TestRelayEndpoints:

    def payload(self, **overrides):
        body = {
            "account": "0x444",
            "calls": [
                {"to": hex(TOKEN), "entrypoint": "transfer", "calldata": ["0xabc", "0x5", "0x0"]}
            ],
            "outside_nonce": "0x99",
            "signature": ["0x1", "0x2"],
        }
        body.update(overrides)
        return body

    @pytest.mark.asyncio
    async def test_execute_from_outside(self, client, chain):
        response = await client.post("/api/v1/relay/execute-from-outside", json=self.payload())

        assert response.status_code == 200
        data = response.json()
        assert data["nonce"] == 0
        assert chain.transfers == [(TOKEN, 0x444, 0xABC, 5)]

        status = await client.get(f"/api/v1/relay/{data['tx_hash']}")
        assert status.json()["status"] == "accepted"

    @pytest.mark.asyncio
    async def test_operation_key_is_idempotent(self, client, chain):
        body = self.payload(operation_key="send-1")
        first = await client.post("/api/v1/relay/execute-from-outside", json=body)
        second = await client.post("/api/v1/relay/execute-from-outside", json=body)

        assert second.json()["tx_hash"] == first.json()["tx_hash"]
        assert second.json()["reused"] is True
        assert len(chain.accepted) == 1

    @pytest.mark.asyncio
    async def test_chain_rejection_reported(self, client):
        response = await client.post(
            "/api/v1/relay/execute-from-outside", json=self.payload(signature=[])
        )
        tx_hash = response.json()["tx_hash"]

        status = await client.get(f"/api/v1/relay/{tx_hash}")
        assert status.json()["status"] == "rejected"
        assert status.json()["error"] == "argent/invalid-signature"

    @pytest.mark.asyncio
    async def test_call_needs_entrypoint_or_selector(self, client):
        response = await client.post(
            "/api/v1/relay/execute-from-outside",
            json=self.payload(calls=[{"to": "0x1", "calldata": []}]),
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, client):
        response = await client.get("/api/v1/relay/0x123")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_resync_nonce(self, client, chain):
        chain.nonces[chain.relayer_address] = 3

        response = await client.post("/admin/relay/resync-nonce", headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["next_nonce"] == 3


class TestOnrampWebhook:

    @pytest.mark.asyncio
    async def test_signed_event_recorded_once(self, client):
        body = json.dumps({"checkout_id": "chk_1", "status": "completed"}).encode()
        headers = {"X-Webhook-Signature": sign(body), "Content-Type": "application/json"}

        first = await client.post("/api/v1/webhooks/onramp", content=body, headers=headers)
        second = await client.post("/api/v1/webhooks/onramp", content=body, headers=headers)

        assert first.json() == {"success": True, "message": "Recorded", "duplicate": False}
        assert second.json()["duplicate"] is True

        events = await client.get("/api/v1/webhooks/onramp/chk_1")
        assert [e["status"] for e in events.json()] == ["COMPLETED"]

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client):
        body = json.dumps({"checkout_id": "chk_2", "status": "completed"}).encode()
        headers = {"X-Webhook-Signature": sign(body, "wrong"), "Content-Type": "application/json"}

        response = await client.post("/api/v1/webhooks/onramp", content=body, headers=headers)

        assert response.status_code == 401
        missing = await client.get("/api/v1/webhooks/onramp/chk_2")
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client):
        response = await client.post(
            "/api/v1/webhooks/onramp", json={"checkout_id": "chk_3", "status": "pending"}
        )

        assert response.status_code == 401

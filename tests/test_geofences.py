"""
Tests for geofenced transfers: geometry, claims, cancellation and expiry
"""
import math
import pytest
from datetime import timedelta
from decimal import Decimal

from app.core.clock import utcnow
from app.core.exceptions import (
    InvalidGeofence, RecipientNotFound, SelfTransferNotAllowed, InsufficientFunds,
    GeofenceNotEligible, AlreadyClaimed, NotGeofenceOwner
)
from app.modules.accounts.models import AccountType
from app.modules.geofences.geo import EARTH_RADIUS_METERS, haversine_distance, validate_radius
from app.modules.geofences.models import GeofenceState
from app.modules.geofences.services import GeofenceService
from app.modules.notifications.models import NotificationType
from app.modules.transactions.models import TransactionType
from app.modules.transactions.services import TransferService

CENTER = (37.7749, -122.4194)


def north_of(point, meters):
    """Point `meters` due north of `point` along the meridian"""
    lat, lng = point
    return lat + math.degrees(meters / EARTH_RADIUS_METERS), lng


@pytest.fixture
def service(db_session, notifier):
    return GeofenceService(db_session, notifier=notifier)


@pytest.fixture
def escrow_account(system_accounts):
    return system_accounts[AccountType.GEOFENCE_ESCROW]


@pytest.fixture
async def geofence(service, alice, bob):
    return await service.create_geofence(
        owner_account_id=alice.id,
        center=CENTER,
        amount="25.00",
        recipient_email="bob@moneybuddy.app",
        radius_meters=50,
        name="Coffee shop"
    )


class TestGeometry:

    @pytest.mark.unit
    def test_haversine_along_meridian(self):
        assert haversine_distance(*CENTER, *north_of(CENTER, 49)) == pytest.approx(49, abs=1e-6)
        assert haversine_distance(*CENTER, *CENTER) == 0

    @pytest.mark.unit
    def test_haversine_known_distance(self):
        # San Francisco to Los Angeles, about 559 km
        distance = haversine_distance(37.7749, -122.4194, 34.0522, -118.2437)
        assert 558_000 < distance < 560_500

    @pytest.mark.unit
    @pytest.mark.parametrize("radius", [25, 100, 1000])
    def test_radius_in_bounds(self, radius):
        validate_radius(radius)

    @pytest.mark.unit
    @pytest.mark.parametrize("radius", [24, 1001, 0, float("nan")])
    def test_radius_out_of_bounds(self, radius):
        with pytest.raises(InvalidGeofence):
            validate_radius(radius)


class TestCreate:

    @pytest.mark.unit
    async def test_reserves_into_escrow(self, geofence, ledger, alice, bob, escrow_account, notifier):
        assert geofence.state == GeofenceState.ACTIVE
        assert geofence.recipient_account_id == bob.id
        assert geofence.transaction_id is not None
        assert await ledger.get_balance(alice.id) == Decimal("75.00")
        assert await ledger.get_balance(escrow_account.id) == Decimal("25.00")

        reservation = await ledger.get_transaction(geofence.transaction_id)
        assert reservation.transaction_type == TransactionType.GEOFENCE
        assert reservation.fee_cents == 0
        assert [e.user_id for e in notifier.of_type(NotificationType.GEOFENCE)] == [bob.user_id]

    @pytest.mark.unit
    async def test_unknown_recipient(self, service, ledger, alice):
        with pytest.raises(RecipientNotFound):
            await service.create_geofence(alice.id, CENTER, "25.00", "ghost@moneybuddy.app")
        assert await ledger.get_balance(alice.id) == Decimal("100.00")

    @pytest.mark.unit
    async def test_cannot_target_self(self, service, alice):
        with pytest.raises(SelfTransferNotAllowed):
            await service.create_geofence(alice.id, CENTER, "25.00", "alice@moneybuddy.app")

    @pytest.mark.unit
    @pytest.mark.parametrize("radius", [24, 1001])
    async def test_radius_validated(self, service, alice, bob, radius):
        with pytest.raises(InvalidGeofence):
            await service.create_geofence(alice.id, CENTER, "25.00", "bob@moneybuddy.app", radius_meters=radius)

    @pytest.mark.unit
    async def test_expiry_must_be_in_future(self, service, alice, bob):
        with pytest.raises(InvalidGeofence):
            await service.create_geofence(
                alice.id, CENTER, "25.00", "bob@moneybuddy.app", expires_at=utcnow() - timedelta(minutes=1)
            )

    @pytest.mark.unit
    async def test_insufficient_funds(self, service, ledger, alice, bob):
        with pytest.raises(InsufficientFunds):
            await service.create_geofence(alice.id, CENTER, "100.01", "bob@moneybuddy.app")
        assert await ledger.get_balance(alice.id) == Decimal("100.00")

    @pytest.mark.unit
    async def test_replayed_create_reserves_once(self, service, ledger, alice, bob):
        first = await service.create_geofence(
            alice.id, CENTER, "10.00", "bob@moneybuddy.app", idempotency_key="geo-1"
        )
        second = await service.create_geofence(
            alice.id, CENTER, "10.00", "bob@moneybuddy.app", idempotency_key="geo-1"
        )

        assert first.id == second.id
        assert await ledger.get_balance(alice.id) == Decimal("90.00")


class TestClaim:

    @pytest.mark.unit
    async def test_scenario_c_radius_boundary(self, service, geofence, ledger, alice, bob, escrow_account):
        with pytest.raises(GeofenceNotEligible) as exc_info:
            await service.claim_geofence(geofence.id, bob.id, north_of(CENTER, 51))
        assert exc_info.value.detail["reason"] == "outside_radius"
        assert await ledger.get_balance(bob.id) == Decimal("0.00")

        claimed = await service.claim_geofence(geofence.id, bob.id, north_of(CENTER, 49))

        assert claimed.state == GeofenceState.CLAIMED
        assert claimed.claimed_at is not None
        assert claimed.settlement_transaction_id is not None
        assert await ledger.get_balance(bob.id) == Decimal("25.00")
        assert await ledger.get_balance(alice.id) == Decimal("75.00")
        assert await ledger.get_balance(escrow_account.id) == Decimal("0.00")

        settlement = await ledger.get_transaction(claimed.settlement_transaction_id)
        assert settlement.parent_transaction_id == geofence.transaction_id

    @pytest.mark.unit
    async def test_second_claim_rejected(self, service, geofence, ledger, bob):
        await service.claim_geofence(geofence.id, bob.id, CENTER)

        with pytest.raises(AlreadyClaimed):
            await service.claim_geofence(geofence.id, bob.id, CENTER)
        assert await ledger.get_balance(bob.id) == Decimal("25.00")

    @pytest.mark.unit
    async def test_caller_keys_cannot_block_claim(self, service, geofence, ledger, db_session, processor, alice, bob):
        deposits = TransferService(db_session, processor=processor)
        for key in (f"geofence-claim-{geofence.id}", f"system:geofence-claim-{geofence.id}"):
            await deposits.deposit(alice.id, "1.00", "pm_card", idempotency_key=key)

        claimed = await service.claim_geofence(geofence.id, bob.id, CENTER)

        assert claimed.state == GeofenceState.CLAIMED
        assert await ledger.get_balance(bob.id) == Decimal("25.00")

    @pytest.mark.unit
    async def test_only_recipient_can_claim(self, service, geofence, make_wallet):
        carol = await make_wallet("carol@moneybuddy.app")

        with pytest.raises(GeofenceNotEligible) as exc_info:
            await service.claim_geofence(geofence.id, carol.id, CENTER)
        assert exc_info.value.detail["reason"] == "not_recipient"

    @pytest.mark.unit
    async def test_expired_geofence_cannot_be_claimed(self, service, alice, bob):
        geofence = await service.create_geofence(
            alice.id, CENTER, "10.00", "bob@moneybuddy.app", expires_at=utcnow() + timedelta(hours=1)
        )

        with pytest.raises(GeofenceNotEligible) as exc_info:
            await service.claim_geofence(geofence.id, bob.id, CENTER, now=utcnow() + timedelta(hours=2))
        assert exc_info.value.detail["reason"] == "expired"

    @pytest.mark.unit
    async def test_invalid_position(self, service, geofence, bob):
        with pytest.raises(InvalidGeofence):
            await service.claim_geofence(geofence.id, bob.id, (91.0, 0.0))


class TestCancelAndExpire:

    @pytest.mark.unit
    async def test_cancel_refunds_owner(self, service, geofence, ledger, alice, escrow_account):
        cancelled = await service.cancel_geofence(geofence.id, alice.id)

        assert cancelled.state == GeofenceState.CANCELLED
        assert await ledger.get_balance(alice.id) == Decimal("100.00")
        assert await ledger.get_balance(escrow_account.id) == Decimal("0.00")

        refund = await ledger.get_transaction(cancelled.settlement_transaction_id)
        assert refund.transaction_type == TransactionType.REFUND
        assert refund.parent_transaction_id == geofence.transaction_id

    @pytest.mark.unit
    async def test_only_owner_can_cancel(self, service, geofence, bob):
        with pytest.raises(NotGeofenceOwner):
            await service.cancel_geofence(geofence.id, bob.id)

    @pytest.mark.unit
    async def test_claimed_geofence_cannot_be_cancelled(self, service, geofence, alice, bob):
        await service.claim_geofence(geofence.id, bob.id, CENTER)

        with pytest.raises(AlreadyClaimed):
            await service.cancel_geofence(geofence.id, alice.id)

    @pytest.mark.unit
    async def test_cancelled_geofence_cannot_be_claimed(self, service, geofence, alice, bob):
        await service.cancel_geofence(geofence.id, alice.id)

        with pytest.raises(GeofenceNotEligible):
            await service.claim_geofence(geofence.id, bob.id, CENTER)

    @pytest.mark.unit
    async def test_expiry_sweep(self, service, ledger, alice, bob):
        due = await service.create_geofence(
            alice.id, CENTER, "10.00", "bob@moneybuddy.app", expires_at=utcnow() + timedelta(hours=1)
        )
        later = await service.create_geofence(
            alice.id, CENTER, "5.00", "bob@moneybuddy.app", expires_at=utcnow() + timedelta(days=3)
        )
        assert await ledger.get_balance(alice.id) == Decimal("85.00")

        expired = await service.expire_due(now=utcnow() + timedelta(hours=2))

        assert [g.id for g in expired] == [due.id]
        assert expired[0].state == GeofenceState.EXPIRED
        assert (await service.get_geofence(later.id)).state == GeofenceState.ACTIVE
        assert await ledger.get_balance(alice.id) == Decimal("95.00")

        assert await service.expire_due(now=utcnow() + timedelta(hours=2)) == []


class TestGeofenceEndpoints:

    @pytest.mark.unit
    async def test_create_and_claim(self, client, headers_for, alice, bob, ledger):
        response = await client.post(
            "/api/v1/geofences",
            json={
                "recipient_email": "bob@moneybuddy.app",
                "amount": "25.00",
                "center_lat": CENTER[0],
                "center_lng": CENTER[1],
                "radius_meters": 50
            },
            headers=headers_for(alice)
        )
        assert response.status_code == 201
        geofence_id = response.json()["id"]

        lat, lng = north_of(CENTER, 51)
        response = await client.post(
            f"/api/v1/geofences/{geofence_id}/claim",
            json={"latitude": lat, "longitude": lng},
            headers=headers_for(bob)
        )
        assert response.status_code == 403
        assert response.json()["error"] == "geofence_not_eligible"

        lat, lng = north_of(CENTER, 49)
        response = await client.post(
            f"/api/v1/geofences/{geofence_id}/claim",
            json={"latitude": lat, "longitude": lng},
            headers=headers_for(bob)
        )
        assert response.status_code == 200
        assert response.json()["state"] == "claimed"
        assert await ledger.get_balance(bob.id) == Decimal("25.00")

    @pytest.mark.unit
    async def test_expire_requires_internal_token(self, client, internal_headers, system_accounts):
        assert (await client.post("/api/v1/geofences/expire")).status_code == 401

        response = await client.post("/api/v1/geofences/expire", headers=internal_headers)
        assert response.status_code == 200
        assert response.json() == {"count": 0, "ids": []}

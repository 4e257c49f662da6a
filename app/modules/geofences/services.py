"""
Geofence conditional transfers.

Funds move owner -> geofence escrow at creation. A claim by the recipient from
inside the circle moves them escrow -> recipient; expiry or cancellation moves
them back to the owner as a refund linked to the reservation.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple, Union

from sqlalchemy import select, update, and_, or_

from app.core.clock import utcnow, as_utc
from app.core.exceptions import (
    InvalidAmount, InvalidGeofence, RecipientNotFound, SelfTransferNotAllowed,
    GeofenceNotFound, GeofenceNotEligible, AlreadyClaimed, NotGeofenceOwner
)
from app.core.money import parse_amount, to_cents, from_cents
from app.modules.accounts.models import AccountType
from app.modules.geofences.geo import (
    DEFAULT_RADIUS_METERS, haversine_distance, validate_position, validate_radius
)
from app.modules.geofences.models import Geofence, GeofenceState
from app.modules.notifications.models import NotificationType, NotificationPriority
from app.modules.notifications.schemas import NotificationEvent
from app.modules.transactions.details import GeofenceDetails, RefundDetails
from app.modules.transactions.models import TransactionType, TransactionStatus
from app.modules.transactions.services import OrchestratedService, TransferStage

logger = logging.getLogger(__name__)


class GeofenceService(OrchestratedService):
    """Create, claim, cancel and expire geofenced transfers"""

    async def get_geofence(self, geofence_id: int) -> Geofence:
        result = await self.db.execute(
            select(Geofence)
            .where(Geofence.id == geofence_id)
            .execution_options(populate_existing=True)
        )
        geofence = result.scalar_one_or_none()
        if geofence is None:
            raise GeofenceNotFound(geofence_id=geofence_id)
        return geofence

    async def get_visible_geofence(self, geofence_id: int, account_id: int) -> Geofence:
        """Geofence visible to its owner or recipient"""
        geofence = await self.get_geofence(geofence_id)
        if account_id not in (geofence.owner_account_id, geofence.recipient_account_id):
            raise GeofenceNotFound(geofence_id=geofence_id)
        return geofence

    async def list_geofences(self, account_id: int) -> List[Geofence]:
        """Geofences the account sent or can claim, newest first"""
        result = await self.db.execute(
            select(Geofence)
            .where(
                or_(
                    Geofence.owner_account_id == account_id,
                    Geofence.recipient_account_id == account_id
                )
            )
            .order_by(Geofence.created_at.desc(), Geofence.id.desc())
        )
        return list(result.scalars().all())

    # ============================================================
    # Create
    # ============================================================

    async def create_geofence(
        self,
        owner_account_id: int,
        center: Tuple[float, float],
        amount: Union[Decimal, str, int],
        recipient_email: str,
        radius_meters: float = DEFAULT_RADIUS_METERS,
        expires_at: Optional[datetime] = None,
        name: Optional[str] = None,
        memo: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Geofence:
        """
        Reserve `amount` for a recipient who must be inside the circle to claim.

        The recipient's wallet is resolved here and never re-resolved.
        """
        amount = parse_amount(amount)
        if amount <= 0:
            raise InvalidAmount(amount=amount)
        lat, lng = center
        validate_position(lat, lng)
        validate_radius(radius_meters)
        if expires_at is not None and as_utc(expires_at) <= utcnow():
            raise InvalidGeofence("Expiry must be in the future", expires_at=expires_at.isoformat())

        recipient = await self.ledger.find_wallet_by_email(recipient_email)
        if recipient is None:
            raise RecipientNotFound(email=recipient_email)
        if recipient.id == owner_account_id:
            raise SelfTransferNotAllowed(account_id=owner_account_id)

        key = self.caller_key(owner_account_id, idempotency_key)
        amount_cents = to_cents(amount)
        replayed = await self._find_replay(key, TransactionType.GEOFENCE, owner_account_id, amount_cents)
        if replayed is not None:
            return await self._geofence_for_reservation(replayed.id)

        escrow = await self.ledger.get_system_account(AccountType.GEOFENCE_ESCROW)
        self._stage("geofence_create", key, TransferStage.VALIDATED, owner=owner_account_id, amount=amount)

        async def work():
            accounts = await self.ledger.lock_accounts(owner_account_id, escrow.id)
            await self.ledger.atomic_adjust(owner_account_id, -amount_cents)
            self._stage("geofence_create", key, TransferStage.DEBITED, cents=amount_cents)
            await self.ledger.atomic_adjust(escrow.id, amount_cents)
            self._stage("geofence_create", key, TransferStage.CREDITED, escrow=escrow.id)

            geofence = Geofence(
                owner_account_id=owner_account_id,
                recipient_account_id=recipient.id,
                recipient_email=recipient_email.strip().lower(),
                name=name,
                memo=memo,
                center_lat=lat,
                center_lng=lng,
                radius_meters=float(radius_meters),
                amount_cents=amount_cents,
                currency=accounts[owner_account_id].currency,
                state=GeofenceState.ACTIVE,
                expires_at=expires_at
            )
            self.db.add(geofence)
            await self.db.flush()

            txn = await self.ledger.record_transaction(
                account_id=owner_account_id,
                transaction_type=TransactionType.GEOFENCE,
                amount_cents=amount_cents,
                status=TransactionStatus.COMPLETED,
                currency=geofence.currency,
                counterpart_account_id=recipient.id,
                counterpart_email=geofence.recipient_email,
                idempotency_key=key,
                details=GeofenceDetails(geofence_id=geofence.id, phase="reserve", escrow_account_id=escrow.id),
                description=memo or name
            )
            geofence.transaction_id = txn.id
            await self.db.flush()
            self._stage("geofence_create", key, TransferStage.RECORDED, txn=txn.reference_code)
            return geofence

        geofence, replayed = await self._run_idempotent(
            work, "geofence_create", key,
            lambda existing: self._check_replay(existing, TransactionType.GEOFENCE, owner_account_id, amount_cents)
        )
        if replayed:
            return await self._geofence_for_reservation(geofence.id)

        logger.info(
            f"Geofence {geofence.id} created: ${amount} reserved from account {owner_account_id} "
            f"for {geofence.recipient_email} within {radius_meters:g}m"
        )
        if recipient.user_id is not None:
            await self._notify(NotificationEvent(
                user_id=recipient.user_id,
                type=NotificationType.GEOFENCE,
                title="Money is waiting for you",
                message=f"${amount} can be claimed at a location{f': {name}' if name else ''}.",
                related_entity_type="geofence",
                related_entity_id=geofence.id,
                data={"amount": str(amount), "radius_meters": radius_meters}
            ))
        return geofence

    async def _geofence_for_reservation(self, transaction_id: int) -> Geofence:
        result = await self.db.execute(select(Geofence).where(Geofence.transaction_id == transaction_id))
        geofence = result.scalar_one_or_none()
        if geofence is None:
            raise GeofenceNotFound(transaction_id=transaction_id)
        return geofence

    # ============================================================
    # Claim
    # ============================================================

    async def claim_geofence(
        self,
        geofence_id: int,
        claimant_account_id: int,
        position: Tuple[float, float],
        now: Optional[datetime] = None
    ) -> Geofence:
        """
        Pay the reserved amount to the recipient if they are inside the circle.

        At most one claim settles: the state flip is a conditional UPDATE, so a
        concurrent second claim finds the geofence no longer active.
        """
        now = now or utcnow()
        lat, lng = position
        validate_position(lat, lng)

        geofence = await self.get_geofence(geofence_id)
        self._ensure_claimable(geofence, claimant_account_id, now)

        distance = haversine_distance(geofence.center_lat, geofence.center_lng, lat, lng)
        if distance > geofence.radius_meters:
            raise GeofenceNotEligible(
                "You are outside the claim area",
                reason="outside_radius",
                distance_meters=round(distance, 1),
                radius_meters=geofence.radius_meters
            )

        escrow_id = await self._escrow_id(geofence)
        key = self.system_key("geofence-claim", geofence.id)

        async def work():
            await self.ledger.lock_accounts(escrow_id, geofence.recipient_account_id)
            await self._flip_state(geofence.id, GeofenceState.CLAIMED, now)
            await self.ledger.atomic_adjust(escrow_id, -geofence.amount_cents)
            self._stage("geofence_claim", key, TransferStage.DEBITED, escrow=escrow_id)
            await self.ledger.atomic_adjust(geofence.recipient_account_id, geofence.amount_cents)
            self._stage("geofence_claim", key, TransferStage.CREDITED, recipient=geofence.recipient_account_id)
            txn = await self.ledger.record_transaction(
                account_id=geofence.recipient_account_id,
                transaction_type=TransactionType.GEOFENCE,
                amount_cents=geofence.amount_cents,
                status=TransactionStatus.COMPLETED,
                currency=geofence.currency,
                counterpart_account_id=geofence.owner_account_id,
                idempotency_key=key,
                parent_transaction_id=geofence.transaction_id,
                details=GeofenceDetails(geofence_id=geofence.id, phase="claim", escrow_account_id=escrow_id),
                description=geofence.memo or geofence.name
            )
            await self._set_settlement(geofence.id, txn.id)
            self._stage("geofence_claim", key, TransferStage.RECORDED, txn=txn.reference_code)
            return await self.get_geofence(geofence.id)

        claimed = await self.ledger.atomic(work, operation="geofence_claim")
        self._stage("geofence_claim", key, TransferStage.COMPLETED)
        logger.info(
            f"Geofence {claimed.id} claimed by account {claimant_account_id} "
            f"at {distance:.1f}m: ${from_cents(claimed.amount_cents)}"
        )

        owner = await self.ledger.get_account(claimed.owner_account_id)
        if owner.user_id is not None:
            await self._notify(NotificationEvent(
                user_id=owner.user_id,
                type=NotificationType.GEOFENCE,
                title="Geofence claimed",
                message=f"{claimed.recipient_email} claimed ${from_cents(claimed.amount_cents)}.",
                related_entity_type="geofence",
                related_entity_id=claimed.id
            ))
        return claimed

    @staticmethod
    def _ensure_claimable(geofence: Geofence, claimant_account_id: int, now: datetime) -> None:
        if geofence.state == GeofenceState.CLAIMED:
            raise AlreadyClaimed(geofence_id=geofence.id)
        if geofence.state != GeofenceState.ACTIVE:
            raise GeofenceNotEligible(
                f"Geofence is {geofence.state.value}", reason=geofence.state.value, geofence_id=geofence.id
            )
        if geofence.expires_at is not None and as_utc(geofence.expires_at) <= now:
            raise GeofenceNotEligible("Geofence has expired", reason="expired", geofence_id=geofence.id)
        if claimant_account_id != geofence.recipient_account_id:
            raise GeofenceNotEligible(
                "Only the intended recipient can claim this geofence", reason="not_recipient"
            )

    async def _flip_state(self, geofence_id: int, target: GeofenceState, now: datetime) -> None:
        """Move an active geofence to `target`, or fail if someone else resolved it first"""
        values = {"state": target, "resolved_at": now}
        if target == GeofenceState.CLAIMED:
            values["claimed_at"] = now
        result = await self.db.execute(
            update(Geofence)
            .where(and_(Geofence.id == geofence_id, Geofence.state == GeofenceState.ACTIVE))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return

        current = await self.get_geofence(geofence_id)
        if current.state == GeofenceState.CLAIMED:
            raise AlreadyClaimed(geofence_id=geofence_id)
        raise GeofenceNotEligible(
            f"Geofence is {current.state.value}", reason=current.state.value, geofence_id=geofence_id
        )

    async def _set_settlement(self, geofence_id: int, transaction_id: int) -> None:
        await self.db.execute(
            update(Geofence)
            .where(Geofence.id == geofence_id)
            .values(settlement_transaction_id=transaction_id)
            .execution_options(synchronize_session=False)
        )

    async def _escrow_id(self, geofence: Geofence) -> int:
        if geofence.transaction_id is not None:
            reservation = await self.ledger.get_transaction(geofence.transaction_id)
            escrow_id = (reservation.details or {}).get("escrow_account_id")
            if escrow_id:
                return escrow_id
        escrow = await self.ledger.get_system_account(AccountType.GEOFENCE_ESCROW)
        return escrow.id

    # ============================================================
    # Cancel / expire
    # ============================================================

    async def cancel_geofence(self, geofence_id: int, owner_account_id: int) -> Geofence:
        """Return the reserved amount to the owner before anyone claims it"""
        geofence = await self.get_geofence(geofence_id)
        if geofence.owner_account_id != owner_account_id:
            raise NotGeofenceOwner(geofence_id=geofence_id)
        if geofence.state == GeofenceState.CLAIMED:
            raise AlreadyClaimed(geofence_id=geofence_id)
        if geofence.state != GeofenceState.ACTIVE:
            raise GeofenceNotEligible(
                f"Geofence is {geofence.state.value}", reason=geofence.state.value, geofence_id=geofence_id
            )
        return await self._release(geofence, GeofenceState.CANCELLED, "Geofence cancelled by sender")

    async def expire_due(self, now: Optional[datetime] = None) -> List[Geofence]:
        """Expire and refund every active geofence past its expiry"""
        now = now or utcnow()
        result = await self.db.execute(
            select(Geofence.id)
            .where(
                and_(
                    Geofence.state == GeofenceState.ACTIVE,
                    Geofence.expires_at.is_not(None),
                    Geofence.expires_at <= now
                )
            )
            .order_by(Geofence.id)
        )
        expired = []
        for geofence_id in result.scalars().all():
            geofence = await self.get_geofence(geofence_id)
            try:
                expired.append(await self._release(geofence, GeofenceState.EXPIRED, "Geofence expired", now))
            except (AlreadyClaimed, GeofenceNotEligible):
                logger.info(f"Geofence {geofence_id} was resolved before it could expire")
        if expired:
            logger.info(f"Expired {len(expired)} geofence(s)")
        return expired

    async def _release(
        self,
        geofence: Geofence,
        target: GeofenceState,
        reason: str,
        now: Optional[datetime] = None
    ) -> Geofence:
        now = now or utcnow()
        escrow_id = await self._escrow_id(geofence)
        key = self.system_key(f"geofence-{target.value}", geofence.id)

        async def work():
            await self.ledger.lock_accounts(escrow_id, geofence.owner_account_id)
            await self._flip_state(geofence.id, target, now)
            await self.ledger.atomic_adjust(escrow_id, -geofence.amount_cents)
            await self.ledger.atomic_adjust(geofence.owner_account_id, geofence.amount_cents)
            self._stage("geofence_release", key, TransferStage.CREDITED, owner=geofence.owner_account_id)
            txn = await self.ledger.record_transaction(
                account_id=geofence.owner_account_id,
                transaction_type=TransactionType.REFUND,
                amount_cents=geofence.amount_cents,
                status=TransactionStatus.COMPLETED,
                currency=geofence.currency,
                idempotency_key=key,
                parent_transaction_id=geofence.transaction_id,
                details=RefundDetails(reason=reason, geofence_id=geofence.id),
                description=reason
            )
            await self._set_settlement(geofence.id, txn.id)
            return await self.get_geofence(geofence.id)

        released = await self.ledger.atomic(work, operation=f"geofence_{target.value}")
        logger.info(
            f"Geofence {released.id} {target.value}: ${from_cents(released.amount_cents)} "
            f"returned to account {released.owner_account_id}"
        )

        owner = await self.ledger.get_account(released.owner_account_id)
        if owner.user_id is not None:
            await self._notify(NotificationEvent(
                user_id=owner.user_id,
                type=NotificationType.GEOFENCE,
                title=f"Geofence {target.value}",
                message=f"${from_cents(released.amount_cents)} was returned to your wallet.",
                priority=NotificationPriority.LOW,
                related_entity_type="geofence",
                related_entity_id=released.id
            ))
        return released

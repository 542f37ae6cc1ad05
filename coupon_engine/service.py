import logging
import secrets
import threading
import weakref
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from .models import (
    EventType,
    Coupon,
    CouponEvent,
    CouponHistory,
    WithdrawalRecord,
    WithdrawalStatus,
)
from .store import JsonFileStore, StorageError
from .transfer import TransferCapability, TransferError, TransferUnconfirmedError, sol_to_lamports

logger = logging.getLogger(__name__)

MAX_ID_ATTEMPTS = 5

OPEN_WITHDRAWALS = (
    WithdrawalStatus.PENDING,
    WithdrawalStatus.SUBMITTED,
    WithdrawalStatus.CONFIRMED,
    WithdrawalStatus.UNCONFIRMED,
)


class LedgerServiceError(Exception):
    pass


class InvalidInputError(LedgerServiceError):
    pass


class CouponNotFoundError(LedgerServiceError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    pass


class ExternalTransferFailedError(LedgerServiceError):
    pass


class WithdrawalUnconfirmedError(ExternalTransferFailedError):
    def __init__(self, message: str, tx_sig: str):
        super().__init__(message)
        self.tx_sig = tx_sig


def generate_coupon_id() -> str:
    token = secrets.token_hex(8).upper()
    return f"CPN-{token[:8]}-{token[8:]}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: Optional[str], field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise InvalidInputError(f"{field} is required")
    return text


def _require_amount(value) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidInputError("amount_sol must be a positive number")
    if not amount.is_finite() or amount <= 0:
        raise InvalidInputError("amount_sol must be a positive number")
    return amount


class CouponLedger:
    """
    The only writer of coupon balances.

    Every balance change is committed together with exactly one event, so a
    coupon's remaining amount always equals the replay of its history.
    Operations on one coupon are serialized with a per-coupon lock, held for
    the whole of an on-chain withdrawal.
    """

    def __init__(
        self,
        store: JsonFileStore,
        transfer: Optional[TransferCapability] = None,
        pool_address: str = "",
        id_factory: Callable[[], str] = generate_coupon_id,
    ):
        self.store = store
        self.transfer = transfer
        self.pool_address = pool_address
        self.id_factory = id_factory
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def create_coupon(
        self,
        owner: str,
        label: str,
        amount,
        expires_at: Optional[datetime] = None,
    ) -> tuple[Coupon, CouponEvent]:
        owner = _require_text(owner, "wallet")
        label = _require_text(label, "label")
        amount = _require_amount(amount)
        now = _now()

        with self.store.transaction():
            coupon = Coupon(
                id=self._new_coupon_id(),
                label=label,
                owner_wallet=owner,
                initial_amount_sol=amount,
                remaining_amount_sol=amount,
                expires_at=expires_at,
                pool_address=self.pool_address,
                created_at=now,
            )
            self.store.create_coupon(coupon)
            try:
                event = self.store.add_event(CouponEvent(
                    coupon_id=coupon.id,
                    owner_wallet=owner,
                    type=EventType.CREATE,
                    amount_sol=amount,
                    to_address=owner,
                    created_at=now,
                ))
            except StorageError:
                logger.error("Create event for coupon %s was not stored; removing the coupon", coupon.id)
                self.store.remove_coupon(coupon.id, owner)
                raise

        logger.info("Created coupon %s for %s with %s SOL", coupon.id, owner, amount)
        return coupon, event

    def deposit(
        self,
        coupon_id: str,
        owner: str,
        amount,
        tx_sig: Optional[str] = None,
    ) -> tuple[Coupon, CouponEvent]:
        coupon_id = _require_text(coupon_id, "coupon_id")
        owner = _require_text(owner, "wallet")
        amount = _require_amount(amount)

        with self._coupon_lock(coupon_id):
            coupon = self._get_coupon(coupon_id, owner)
            return self._commit(coupon, coupon.remaining_amount_sol + amount, CouponEvent(
                coupon_id=coupon_id,
                owner_wallet=owner,
                type=EventType.DEPOSIT,
                amount_sol=amount,
                to_address=owner,
                tx_sig=tx_sig or None,
                created_at=_now(),
            ))

    def withdraw_onchain(
        self,
        coupon_id: str,
        owner: str,
        amount,
        recipient: str,
    ) -> tuple[Coupon, CouponEvent]:
        coupon_id = _require_text(coupon_id, "coupon_id")
        owner = _require_text(owner, "wallet")
        recipient = _require_text(recipient, "recipient")
        amount = _require_amount(amount)
        try:
            sol_to_lamports(amount)
        except TransferError:
            raise InvalidInputError("amount_sol is below one lamport")

        with self._coupon_lock(coupon_id):
            coupon = self._get_coupon(coupon_id, owner)
            self._check_balance(coupon, amount)
            if self.transfer is None:
                raise ExternalTransferFailedError("on-chain transfers are not configured")

            now = _now()
            record = self.store.add_withdrawal(WithdrawalRecord(
                id=secrets.token_hex(8),
                coupon_id=coupon_id,
                owner_wallet=owner,
                amount_sol=amount,
                recipient=recipient,
                created_at=now,
                updated_at=now,
            ))

            def submitted(signature: str) -> None:
                self._mark_withdrawal(record.id, WithdrawalStatus.SUBMITTED, signature)

            try:
                tx_sig = self.transfer.transfer(recipient, amount, on_submitted=submitted)
            except TransferUnconfirmedError as e:
                self._mark_withdrawal(record.id, WithdrawalStatus.UNCONFIRMED, e.signature)
                raise WithdrawalUnconfirmedError(str(e), e.signature) from e
            except TransferError as e:
                self._mark_withdrawal(record.id, WithdrawalStatus.FAILED)
                raise ExternalTransferFailedError(str(e)) from e

            logger.info("Withdrawal of %s SOL from %s to %s confirmed: %s", amount, coupon_id, recipient, tx_sig)
            self._mark_withdrawal(record.id, WithdrawalStatus.CONFIRMED, tx_sig)
            try:
                result = self._commit(coupon, coupon.remaining_amount_sol - amount, CouponEvent(
                    coupon_id=coupon_id,
                    owner_wallet=owner,
                    type=EventType.WITHDRAW,
                    amount_sol=amount,
                    to_address=recipient,
                    tx_sig=tx_sig,
                    created_at=_now(),
                ))
            except Exception:
                logger.critical(
                    "Confirmed transfer %s (%s SOL from coupon %s of %s to %s) was not recorded; "
                    "left in the withdrawal journal as %s for reconciliation",
                    tx_sig, amount, coupon_id, owner, recipient, record.id,
                )
                raise
            self._mark_withdrawal(record.id, WithdrawalStatus.RECORDED, tx_sig)
            return result

    def reconcile_withdrawals(self) -> list[WithdrawalRecord]:
        """
        Bring the ledger up to date with the withdrawal journal.

        Confirmed transfers that never reached the ledger are recorded now, and
        records whose event already exists are closed. Anything still pending,
        submitted or unconfirmed needs an operator to look the signature up, so
        it is only logged. Returns the records closed by this call.
        """
        closed = []
        for record in self.store.list_withdrawals(*OPEN_WITHDRAWALS):
            with self._coupon_lock(record.coupon_id):
                if record.tx_sig and self._has_withdraw_event(record):
                    closed.append(self._close_withdrawal(record))
                    continue
                if record.status is not WithdrawalStatus.CONFIRMED:
                    logger.warning(
                        "Withdrawal %s of %s SOL from coupon %s is %s (signature %s); check it on-chain",
                        record.id, record.amount_sol, record.coupon_id, record.status.value, record.tx_sig,
                    )
                    continue

                coupon = self.store.get_coupon(record.coupon_id, record.owner_wallet)
                if coupon is None or record.amount_sol > coupon.remaining_amount_sol:
                    logger.critical(
                        "Confirmed transfer %s (%s SOL from coupon %s) cannot be recorded against the "
                        "current balance; manual reconciliation required",
                        record.tx_sig, record.amount_sol, record.coupon_id,
                    )
                    continue
                self._commit(coupon, coupon.remaining_amount_sol - record.amount_sol, CouponEvent(
                    coupon_id=record.coupon_id,
                    owner_wallet=record.owner_wallet,
                    type=EventType.WITHDRAW,
                    amount_sol=record.amount_sol,
                    to_address=record.recipient,
                    tx_sig=record.tx_sig,
                    note="recorded from withdrawal journal",
                    created_at=_now(),
                ))
                logger.warning("Recorded confirmed transfer %s from the withdrawal journal", record.tx_sig)
                closed.append(self._close_withdrawal(record))
        return closed

    def pay(
        self,
        owner: str,
        coupon_id: str,
        amount,
        merchant: str,
        note: Optional[str] = None,
    ) -> tuple[Coupon, CouponEvent]:
        owner = _require_text(owner, "wallet")
        coupon_id = _require_text(coupon_id, "coupon_id")
        merchant = _require_text(merchant, "merchant")
        amount = _require_amount(amount)

        with self._coupon_lock(coupon_id):
            coupon = self._get_coupon(coupon_id, owner)
            self._check_balance(coupon, amount)
            return self._commit(coupon, coupon.remaining_amount_sol - amount, CouponEvent(
                coupon_id=coupon_id,
                owner_wallet=owner,
                type=EventType.PAY,
                amount_sol=amount,
                to_address=merchant,
                note=note or None,
                created_at=_now(),
            ))

    def get_history(self, coupon_id: str, owner: str) -> CouponHistory:
        coupon_id = _require_text(coupon_id, "coupon_id")
        owner = _require_text(owner, "wallet")
        coupon = self._get_coupon(coupon_id, owner)
        return CouponHistory(coupon=coupon, events=self.store.list_events_for_coupon(coupon_id, owner))

    def list_for_owner(self, owner: str) -> list[CouponHistory]:
        owner = _require_text(owner, "wallet")
        return [
            CouponHistory(coupon=c, events=self.store.list_events_for_coupon(c.id, c.owner_wallet))
            for c in self.store.list_coupons_by_owner(owner)
        ]

    def _get_coupon(self, coupon_id: str, owner: str) -> Coupon:
        coupon = self.store.get_coupon(coupon_id, owner)
        if coupon is None:
            raise CouponNotFoundError("coupon not found for this wallet")
        return coupon

    def _check_balance(self, coupon: Coupon, amount: Decimal) -> None:
        if amount > coupon.remaining_amount_sol:
            raise InsufficientBalanceError("insufficient coupon balance")

    def _commit(self, coupon: Coupon, new_remaining: Decimal, event: CouponEvent) -> tuple[Coupon, CouponEvent]:
        previous = coupon.remaining_amount_sol

        def set_remaining(value: Decimal):
            def mutate(c: Coupon) -> None:
                c.remaining_amount_sol = value
            return mutate

        with self.store.transaction():
            updated = self.store.update_coupon(coupon.id, coupon.owner_wallet, set_remaining(new_remaining))
            if updated is None:
                raise CouponNotFoundError("coupon not found for this wallet")
            try:
                self.store.add_event(event)
            except StorageError:
                logger.error("Event for coupon %s was not stored; restoring balance %s", coupon.id, previous)
                self.store.update_coupon(coupon.id, coupon.owner_wallet, set_remaining(previous))
                raise

        logger.info(
            "Coupon %s %s %s SOL: %s -> %s",
            coupon.id, event.type.value, event.amount_sol, previous, new_remaining,
        )
        return updated, event

    def _new_coupon_id(self) -> str:
        for _ in range(MAX_ID_ATTEMPTS):
            coupon_id = self.id_factory()
            if self.store.get_coupon(coupon_id) is None:
                return coupon_id
        raise LedgerServiceError(f"Could not generate a unique coupon id after {MAX_ID_ATTEMPTS} attempts")

    def _mark_withdrawal(
        self,
        withdrawal_id: str,
        status: WithdrawalStatus,
        tx_sig: Optional[str] = None,
    ) -> None:
        def mutate(record: WithdrawalRecord) -> None:
            record.status = status
            record.tx_sig = tx_sig or record.tx_sig
            record.updated_at = _now()

        # The transfer outcome must still reach the caller when the journal cannot be written.
        try:
            self.store.update_withdrawal(withdrawal_id, mutate)
        except StorageError as e:
            logger.error("Withdrawal %s could not be marked %s (signature %s): %s", withdrawal_id, status.value, tx_sig, e)

    def _close_withdrawal(self, record: WithdrawalRecord) -> WithdrawalRecord:
        def mutate(r: WithdrawalRecord) -> None:
            r.status = WithdrawalStatus.RECORDED
            r.updated_at = _now()

        return self.store.update_withdrawal(record.id, mutate) or record

    def _has_withdraw_event(self, record: WithdrawalRecord) -> bool:
        return any(
            e.type is EventType.WITHDRAW and e.tx_sig == record.tx_sig
            for e in self.store.list_events_for_coupon(record.coupon_id, record.owner_wallet)
        )

    def _coupon_lock(self, coupon_id: str) -> threading.Lock:
        # Entries disappear once no caller holds or waits on the lock.
        with self._locks_guard:
            lock = self._locks.get(coupon_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[coupon_id] = lock
            return lock

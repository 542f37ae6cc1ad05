import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from .models import Coupon, CouponEvent, WithdrawalRecord, WithdrawalStatus

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

COUPONS_KEY = "coupons"
EVENTS_KEY = "events"
WITHDRAWALS_KEY = "withdrawals"


class StorageError(Exception):
    pass


class JsonFileStore:
    """
    Coupons and events kept as two JSON documents under ``data_dir``, plus a
    journal of on-chain withdrawals that are not yet reflected in the ledger.

    Every write rewrites the whole collection it touches. A missing file reads
    as an empty collection; a corrupt one is logged, moved aside and also read
    as empty, so the service stays available at the cost of the lost records.
    """

    def __init__(self, data_dir: str | os.PathLike):
        self.data_dir = Path(data_dir)
        self.coupons_file = self.data_dir / "coupons.json"
        self.events_file = self.data_dir / "events.json"
        self.withdrawals_file = self.data_dir / "withdrawals.json"
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator["JsonFileStore"]:
        with self._lock:
            yield self

    # Coupons

    def list_coupons_by_owner(self, owner_wallet: str) -> list[Coupon]:
        return [c for c in self._load_coupons() if c.owner_wallet == owner_wallet]

    def get_coupon(self, coupon_id: str, owner_wallet: Optional[str] = None) -> Optional[Coupon]:
        for coupon in self._load_coupons():
            if coupon.id == coupon_id and (not owner_wallet or coupon.owner_wallet == owner_wallet):
                return coupon
        return None

    def create_coupon(self, coupon: Coupon) -> Coupon:
        with self._lock:
            coupons = self._load_coupons()
            coupons.append(coupon)
            self._save(self.coupons_file, COUPONS_KEY, coupons)
        return coupon

    def update_coupon(
        self,
        coupon_id: str,
        owner_wallet: str,
        mutate: Callable[[Coupon], None],
    ) -> Optional[Coupon]:
        with self._lock:
            coupons = self._load_coupons()
            for coupon in coupons:
                if coupon.id == coupon_id and coupon.owner_wallet == owner_wallet:
                    mutate(coupon)
                    self._save(self.coupons_file, COUPONS_KEY, coupons)
                    return coupon
        return None

    def remove_coupon(self, coupon_id: str, owner_wallet: str) -> bool:
        """Undo a coupon write whose create event could not be stored."""
        with self._lock:
            coupons = self._load_coupons()
            kept = [c for c in coupons if not (c.id == coupon_id and c.owner_wallet == owner_wallet)]
            if len(kept) == len(coupons):
                return False
            self._save(self.coupons_file, COUPONS_KEY, kept)
        return True

    # Events

    def add_event(self, event: CouponEvent) -> CouponEvent:
        with self._lock:
            events = self._load_events()
            events.append(event)
            self._save(self.events_file, EVENTS_KEY, events)
        return event

    def list_events_for_coupon(self, coupon_id: str, owner_wallet: str) -> list[CouponEvent]:
        return [
            e for e in self._load_events()
            if e.coupon_id == coupon_id and e.owner_wallet == owner_wallet
        ]

    # Withdrawal journal

    def add_withdrawal(self, record: WithdrawalRecord) -> WithdrawalRecord:
        with self._lock:
            records = self._load_withdrawals()
            records.append(record)
            self._save(self.withdrawals_file, WITHDRAWALS_KEY, records)
        return record

    def update_withdrawal(
        self,
        withdrawal_id: str,
        mutate: Callable[[WithdrawalRecord], None],
    ) -> Optional[WithdrawalRecord]:
        with self._lock:
            records = self._load_withdrawals()
            for record in records:
                if record.id == withdrawal_id:
                    mutate(record)
                    self._save(self.withdrawals_file, WITHDRAWALS_KEY, records)
                    return record
        return None

    def list_withdrawals(self, *statuses: WithdrawalStatus) -> list[WithdrawalRecord]:
        records = self._load_withdrawals()
        if not statuses:
            return records
        return [r for r in records if r.status in statuses]

    # File handling

    def _load_coupons(self) -> list[Coupon]:
        return self._load(self.coupons_file, COUPONS_KEY, Coupon)

    def _load_events(self) -> list[CouponEvent]:
        return self._load(self.events_file, EVENTS_KEY, CouponEvent)

    def _load_withdrawals(self) -> list[WithdrawalRecord]:
        return self._load(self.withdrawals_file, WITHDRAWALS_KEY, WithdrawalRecord)

    def _load(self, path: Path, key: str, model: type[RecordT]) -> list[RecordT]:
        with self._lock:
            if not path.exists():
                return []
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                if not isinstance(data, dict) or not isinstance(data.get(key), list):
                    raise ValueError(f"expected an object with a '{key}' list")
                return TypeAdapter(list[model]).validate_python(data[key])
            except (OSError, ValueError, ValidationError) as e:
                # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
                self._quarantine(path, e)
                return []

    def _quarantine(self, path: Path, error: Exception) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        backup = path.with_name(f"{path.name}.corrupt-{stamp}")
        try:
            os.replace(path, backup)
        except OSError as move_error:
            logger.error(
                "Storage file %s is unreadable (%s) and could not be moved aside (%s); "
                "continuing with an empty collection",
                path, error, move_error,
            )
            return
        logger.error(
            "Storage file %s is unreadable (%s); moved to %s and continuing with an empty collection",
            path, error, backup,
        )

    def _save(self, path: Path, key: str, records: list[BaseModel]) -> None:
        payload = {key: [r.model_dump(mode="json") for r in records]}
        tmp_name = None
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=self.data_dir,
                prefix=f".{path.name}.", suffix=".tmp", delete=False,
            ) as tmp:
                tmp_name = tmp.name
                json.dump(payload, tmp, indent=2)
            os.replace(tmp_name, path)
        except OSError as e:
            logger.error("Failed to write %s: %s", path, e)
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(f"Failed to write {path.name}") from e

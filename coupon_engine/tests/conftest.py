from decimal import Decimal

import pytest

from coupon_engine.service import CouponLedger
from coupon_engine.store import JsonFileStore
from coupon_engine.transfer import TransferError, TransferUnconfirmedError


POOL_ADDRESS = "8hGDXBJqpCZvWaDcbvXykRSb1bKbbJ5Ji4c85ubYvkaA"


class FakeTransfer:
    """Records every transfer and answers with a fixed signature or error."""

    def __init__(self, signature: str = "SIG123", error: Exception | None = None):
        self.signature = signature
        self.error = error
        self.calls: list[tuple[str, Decimal]] = []

    def transfer(self, recipient: str, amount_sol: Decimal, on_submitted=None) -> str:
        self.calls.append((recipient, amount_sol))
        if isinstance(self.error, TransferUnconfirmedError):
            if on_submitted is not None:
                on_submitted(self.error.signature)
            raise self.error
        if self.error is not None:
            raise self.error
        if on_submitted is not None:
            on_submitted(self.signature)
        return self.signature


@pytest.fixture
def store(tmp_path):
    return JsonFileStore(tmp_path / "data")


@pytest.fixture
def transfer():
    return FakeTransfer()


@pytest.fixture
def ledger(store, transfer):
    return CouponLedger(store=store, transfer=transfer, pool_address=POOL_ADDRESS)


@pytest.fixture
def failing_transfer():
    return FakeTransfer(error=TransferError("insufficient funds for rent"))


@pytest.fixture
def unconfirmed_transfer():
    return FakeTransfer(error=TransferUnconfirmedError("Transaction SIG999 was not confirmed", "SIG999"))

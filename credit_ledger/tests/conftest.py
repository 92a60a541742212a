import pytest

from credit_ledger.config import Settings
from credit_ledger.models import LedgerSource
from credit_ledger.service import CreditService
from credit_ledger.storage import InMemoryStorage


@pytest.fixture
def settings():
    return Settings(retry_backoff_base=0.0, database_url=None)


@pytest.fixture
def service(settings):
    return CreditService(storage=InMemoryStorage(), settings=settings)


@pytest.fixture
def fund():
    """Seed a user's balance through a credit-pack ledger entry."""
    counter = {"n": 0}

    def _fund(service, user_id, credits):
        counter["n"] += 1
        return service.ledger.append(
            user_id, credits, LedgerSource.IAP_CREDIT_PACK,
            receipt_id=f"seed-{user_id}-{counter['n']}",
            metadata={"product_id": "seed"},
        )

    return _fund

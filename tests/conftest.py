from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from lotledger.db.models import Base
from lotledger.db.store import LedgerStore
from lotledger.services.disposal_service import DisposalEngine
from lotledger.services.pending_operations import PendingOperationService
from tests.helpers.fakes import FixedPriceProvider

engine: Engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
session_factory = sessionmaker(engine)


@pytest.fixture(scope="function")
def test_session() -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session


@pytest.fixture(scope="function", autouse=True)
def reset_db() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def store(test_session: Session) -> LedgerStore:
    return LedgerStore(test_session)


@pytest.fixture(scope="function")
def price_provider() -> FixedPriceProvider:
    return FixedPriceProvider()


@pytest.fixture(scope="function")
def disposal_engine(store: LedgerStore) -> DisposalEngine:
    return DisposalEngine(store)


@pytest.fixture(scope="function")
def pending_service(store: LedgerStore, price_provider: FixedPriceProvider) -> PendingOperationService:
    return PendingOperationService(store, price_provider=price_provider)

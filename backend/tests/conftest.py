from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from coachhub.config import get_settings
from coachhub.core.security import Principal, Role
from coachhub.db import models
from coachhub.db.session import Base
from coachhub.services.payments import StubGateway

NOW = datetime(2030, 3, 4, 9, 0, tzinfo=timezone.utc)

COACH = Principal(user_id=1, role=Role.coach)
CLIENT = Principal(user_id=10, role=Role.client)
ADMIN = Principal(user_id=99, role=Role.admin)


@pytest.fixture()
def db_session():
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def gateway():
    return StubGateway(get_settings())


@pytest.fixture()
def coach_account(db_session):
    account = models.CoachPaymentAccount(coach_id=COACH.user_id, gateway_account_id="acct_coach_1")
    db_session.add(account)
    db_session.commit()
    return account

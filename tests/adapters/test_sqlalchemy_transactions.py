"""Tests for SQLAlchemySessionTransactionManager on in-memory SQLite."""

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session

from src.adapters.transactions.sqlalchemy_transactions import SQLAlchemySessionTransactionManager
from src.domain.ports import CoordinatorError, TransactionStatus


@pytest.fixture
def engine():
    engine = create_engine("sqlite://")
    with engine.begin() as connection:
        connection.execute(text("CREATE TABLE items (id INTEGER PRIMARY KEY, name VARCHAR)"))
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def manager(session):
    tx_manager = SQLAlchemySessionTransactionManager(session)
    yield tx_manager
    tx_manager.detach()


class TestSessionTransactions:
    """Test commit/rollback notifications."""

    def test_no_transaction_before_first_statement(self, manager):
        assert not manager.is_transaction_active()
        assert manager.current_transaction_id() is None
        with pytest.raises(CoordinatorError):
            manager.register_completion_listener(lambda status: None)

    def test_commit(self, session, manager):
        statuses = []
        session.execute(text("INSERT INTO items VALUES (1, 'a')"))
        assert manager.is_transaction_active()
        manager.register_completion_listener(statuses.append)

        session.commit()

        assert statuses == [TransactionStatus.COMMITTED]
        assert not manager.is_transaction_active()

    def test_rollback(self, session, manager):
        statuses = []
        session.execute(text("INSERT INTO items VALUES (1, 'a')"))
        manager.register_completion_listener(statuses.append)

        session.rollback()

        assert statuses == [TransactionStatus.ROLLED_BACK]

    def test_transaction_id_is_stable_and_renewed(self, session, manager):
        session.execute(text("INSERT INTO items VALUES (1, 'a')"))
        first = manager.current_transaction_id()
        session.execute(text("INSERT INTO items VALUES (2, 'b')"))
        assert manager.current_transaction_id() == first
        session.commit()

        session.execute(text("INSERT INTO items VALUES (3, 'c')"))
        assert manager.current_transaction_id() != first
        session.rollback()

    def test_savepoint_does_not_complete_root(self, session, manager):
        statuses = []
        session.execute(text("INSERT INTO items VALUES (1, 'a')"))
        root_id = manager.current_transaction_id()
        manager.register_completion_listener(statuses.append)

        with session.begin_nested():
            session.execute(text("INSERT INTO items VALUES (2, 'b')"))
            assert manager.current_transaction_id() == root_id
        assert statuses == []

        session.commit()
        assert statuses == [TransactionStatus.COMMITTED]

    def test_close_without_commit_reports_rollback(self, session, manager):
        statuses = []
        session.execute(text("INSERT INTO items VALUES (1, 'a')"))
        manager.register_completion_listener(statuses.append)

        session.close()

        assert statuses == [TransactionStatus.ROLLED_BACK]

    def test_each_listener_called_once(self, session, manager):
        calls = []
        session.execute(text("INSERT INTO items VALUES (1, 'a')"))
        manager.register_completion_listener(calls.append)
        session.commit()
        session.execute(text("INSERT INTO items VALUES (2, 'b')"))
        session.commit()

        assert calls == [TransactionStatus.COMMITTED]

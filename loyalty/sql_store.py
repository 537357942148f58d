"""
SQLAlchemy implementation of the ledger store.

One ``run_atomic`` call is one database transaction. The account row is read
with SELECT ... FOR UPDATE so concurrent writers on the same account queue
behind each other while different accounts proceed independently.
"""

from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar
from uuid import UUID, uuid4

import structlog
from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    create_engine,
    func,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .errors import AccountAlreadyExistsError, AccountNotFoundError, TransientStoreError
from .models import Account, Tier, Transaction, TransactionFilter, TransactionType, utcnow
from .store import AtomicHandle, LedgerStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class UTCDateTime(TypeDecorator):
    """Stores UTC and always hands back timezone-aware values, SQLite included."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetime passed to the ledger store")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class AccountRow(Base):
    __tablename__ = "loyalty_accounts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    points_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_redeemed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def __repr__(self):
        return f"<AccountRow(id={self.id}, customer_id='{self.customer_id}', balance={self.points_balance})>"


class TransactionRow(Base):
    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        Index("ix_loyalty_transactions_account_created", "account_id", "created_at"),
        Index("ix_loyalty_transactions_type_expires", "type", "expires_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    account_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("loyalty_accounts.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    expired_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def __repr__(self):
        return f"<TransactionRow(id={self.id}, type='{self.type}', points={self.points})>"


def _transaction_row(transaction: Transaction) -> TransactionRow:
    return TransactionRow(
        id=transaction.id,
        account_id=transaction.account_id,
        type=transaction.type.value,
        points=transaction.points,
        description=transaction.description,
        reference=transaction.reference,
        expires_at=transaction.expires_at,
        expired_at=transaction.expired_at,
        created_at=transaction.created_at,
    )


class _SqlAtomicHandle(AtomicHandle):
    def __init__(self, session: Session):
        self._session = session

    def get_account_for_update(self, account_id: UUID) -> Account:
        row = self._session.execute(
            select(AccountRow).where(AccountRow.id == account_id).with_for_update()
        ).scalar_one_or_none()
        if row is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return Account.model_validate(row)

    def insert_transaction(self, transaction: Transaction) -> Transaction:
        self._session.add(_transaction_row(transaction))
        self._session.flush()
        return transaction

    def update_account(self, account: Account) -> Account:
        result = self._session.execute(
            update(AccountRow)
            .where(AccountRow.id == account.id)
            .values(
                points_balance=account.points_balance,
                points_earned=account.points_earned,
                points_redeemed=account.points_redeemed,
                tier=account.tier.value,
                updated_at=account.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise AccountNotFoundError(f"Account {account.id} not found")
        return account

    def mark_expired(self, transaction_ids: Iterable[UUID], expired_at: datetime) -> list[UUID]:
        ids = list(transaction_ids)
        if not ids:
            return []
        unconsumed = list(self._session.execute(
            select(TransactionRow.id)
            .where(
                TransactionRow.id.in_(ids),
                TransactionRow.type == TransactionType.EARN.value,
                TransactionRow.expired_at.is_(None),
            )
            .with_for_update()
        ).scalars())
        if not unconsumed:
            return []
        self._session.execute(
            update(TransactionRow)
            .where(TransactionRow.id.in_(unconsumed))
            .values(expired_at=expired_at)
            .execution_options(synchronize_session=False)
        )
        return unconsumed


class SqlLedgerStore(LedgerStore):
    def __init__(self, engine: Engine, timeout: float = 30.0):
        self.engine = engine
        self.timeout = timeout
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, timeout: float = 30.0, **engine_kwargs) -> "SqlLedgerStore":
        if url.startswith("sqlite"):
            engine_kwargs.setdefault("connect_args", {"timeout": timeout, "check_same_thread": False})
        engine_kwargs.setdefault("pool_pre_ping", True)
        return cls(create_engine(url, **engine_kwargs), timeout=timeout)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def _session(self) -> Session:
        return self._session_factory()

    def get_account(self, customer_id: str) -> Optional[Account]:
        with self._session() as session:
            row = session.execute(
                select(AccountRow).where(AccountRow.customer_id == customer_id)
            ).scalar_one_or_none()
            return Account.model_validate(row) if row else None

    def get_account_by_id(self, account_id: UUID) -> Optional[Account]:
        with self._session() as session:
            row = session.get(AccountRow, account_id)
            return Account.model_validate(row) if row else None

    def create_account(self, customer_id: str, tier: Tier = Tier.BRONZE) -> Account:
        now = utcnow()
        row = AccountRow(
            id=uuid4(),
            customer_id=customer_id,
            points_balance=0,
            points_earned=0,
            points_redeemed=0,
            tier=tier.value,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._session() as session, session.begin():
                session.add(row)
        except IntegrityError as exc:
            raise AccountAlreadyExistsError(f"Account for customer {customer_id} already exists") from exc
        return Account.model_validate(row)

    def run_atomic(self, fn: Callable[[AtomicHandle], T]) -> T:
        try:
            with self._session() as session, session.begin():
                if self.engine.dialect.name == "postgresql":
                    timeout_ms = int(self.timeout * 1000)
                    session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
                    session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
                return fn(_SqlAtomicHandle(session))
        except IntegrityError:
            raise
        except OperationalError as exc:
            logger.warning("Ledger transaction failed transiently", error=str(exc.orig))
            raise TransientStoreError(str(exc.orig)) from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                logger.warning("Ledger connection lost", error=str(exc.orig))
                raise TransientStoreError(str(exc.orig)) from exc
            raise

    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        with self._session() as session:
            row = session.get(TransactionRow, transaction_id)
            return Transaction.model_validate(row) if row else None

    def list_transactions(self, account_id: UUID, filter: TransactionFilter) -> tuple[list[Transaction], int]:
        conditions = [TransactionRow.account_id == account_id]
        if filter.type is not None:
            conditions.append(TransactionRow.type == filter.type.value)
        if filter.date_from is not None:
            conditions.append(TransactionRow.created_at >= filter.date_from)
        if filter.date_to is not None:
            conditions.append(TransactionRow.created_at <= filter.date_to)

        with self._session() as session:
            total = session.execute(
                select(func.count()).select_from(TransactionRow).where(*conditions)
            ).scalar_one()
            rows = session.execute(
                select(TransactionRow)
                .where(*conditions)
                .order_by(TransactionRow.created_at.desc(), TransactionRow.id.desc())
                .offset(filter.offset)
                .limit(filter.limit)
            ).scalars().all()
            return [Transaction.model_validate(row) for row in rows], total

    def list_expiring_earn_transactions(
        self, before: datetime, account_id: Optional[UUID] = None
    ) -> list[Transaction]:
        query = select(TransactionRow).where(
            TransactionRow.type == TransactionType.EARN.value,
            TransactionRow.expires_at.is_not(None),
            TransactionRow.expires_at <= before,
            TransactionRow.expired_at.is_(None),
        )
        if account_id is not None:
            query = query.where(TransactionRow.account_id == account_id)
        with self._session() as session:
            rows = session.execute(
                query.order_by(TransactionRow.expires_at, TransactionRow.created_at)
            ).scalars().all()
            return [Transaction.model_validate(row) for row in rows]

    def sum_transaction_points(self, account_id: UUID) -> tuple[int, int]:
        with self._session() as session:
            total, transactions = session.execute(
                select(func.coalesce(func.sum(TransactionRow.points), 0), func.count())
                .where(TransactionRow.account_id == account_id)
            ).one()
            return int(total), int(transactions)

"""
Ledger Store

SQLAlchemy schema for accounts, the append-only transaction log, the reward
catalog and redemptions, plus the transaction boundary every mutation runs in.
"""

import logging
import secrets
import string
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Integer, String, Text,
    create_engine, event, func, select,
)
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import AccountExistsError, AccountNotFoundError, StoreUnavailableError

logger = logging.getLogger(__name__)

MEMBER_ID_ALPHABET = string.ascii_uppercase + string.digits
MEMBER_ID_LENGTH = 8

WRITE_OPTION = "loyalty_write"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    member_id: Mapped[str] = mapped_column(String(MEMBER_ID_LENGTH), unique=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    balance: Mapped[int] = mapped_column(Integer, default=0)
    lifetime_points: Mapped[int] = mapped_column(Integer, default=0)
    tier: Mapped[str] = mapped_column(String(32), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class Transaction(Base):
    """Append-only ledger row. Credits are stored positive, debits negative."""
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), index=True)
    kind: Mapped[str] = mapped_column(String(16))
    amount: Mapped[int] = mapped_column(Integer)
    balance_after: Mapped[int] = mapped_column(Integer)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admin_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )


class Reward(Base):
    __tablename__ = "rewards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(50), default="general")
    points_cost: Mapped[int] = mapped_column(Integer)
    active: Mapped[bool] = mapped_column(Boolean, default=True)


class Redemption(Base):
    __tablename__ = "redemptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), index=True)
    reward_id: Mapped[int] = mapped_column(Integer, ForeignKey("rewards.id"), index=True)
    transaction_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("transactions.id"), unique=True
    )
    points_spent: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


DEFAULT_REWARDS = (
    {"name": "10% Off Coupon", "points_cost": 500, "category": "discount",
     "description": "Get 10% off your next purchase"},
    {"name": "Free Shipping", "points_cost": 200, "category": "shipping",
     "description": "Free shipping on your next order"},
    {"name": "$25 Gift Card", "points_cost": 2000, "category": "gift_card",
     "description": "$25 gift card to use in store"},
    {"name": "Premium Membership", "points_cost": 5000, "category": "membership",
     "description": "1 year premium membership access"},
)


def _configure_sqlite(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write, so two writers can both
    # hold a shared lock and deadlock on upgrade. Write transactions take the
    # write lock up front; read transactions keep a deferred BEGIN and, under
    # WAL, read a snapshot without waiting on the writer.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(WRITE_OPTION, True):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


class LedgerStore:
    """Owns the engine, the schema and the transaction boundary."""

    def __init__(self, database_url: Optional[str] = None, *, echo: bool = False,
                 timeout: float = 30.0, engine: Optional[Engine] = None):
        if engine is None:
            if database_url is None:
                from .config import get_settings
                settings = get_settings()
                database_url = settings.database_url
                echo = settings.sql_echo
                timeout = settings.db_timeout
            engine = self._create_engine(database_url, echo=echo, timeout=timeout)

        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
        Base.metadata.create_all(engine)

    @staticmethod
    def _create_engine(database_url: str, *, echo: bool, timeout: float) -> Engine:
        if not database_url.startswith("sqlite"):
            return create_engine(database_url, echo=echo, pool_pre_ping=True)

        kwargs: dict = {
            "echo": echo,
            "connect_args": {"check_same_thread": False, "timeout": timeout},
        }
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
        _configure_sqlite(engine)
        return engine

    @classmethod
    def in_memory(cls) -> "LedgerStore":
        return cls("sqlite://")

    @contextmanager
    def transaction(self, write: bool = True) -> Iterator[Session]:
        """
        One session, one database transaction.

        Commits when the block exits normally and rolls back on any exception,
        so a failed operation leaves neither an account change nor a log row.
        Pass ``write=False`` for read-only work so it does not queue behind
        writers on SQLite. Driver-level failures surface as
        StoreUnavailableError.
        """
        try:
            with self._sessions.begin() as session:
                session.connection(execution_options={WRITE_OPTION: write})
                yield session
        except (sa_exc.OperationalError, sa_exc.InterfaceError) as e:
            logger.error("Ledger store unavailable: %s", e)
            raise StoreUnavailableError(f"Ledger store unavailable: {e.orig or e}") from e

    # Account registration lives here rather than in the engine: creating a
    # row is not a balance mutation.
    def create_account(self, session: Session, email: str, name: Optional[str],
                       floor_tier: str) -> Account:
        existing = session.execute(
            select(Account.id).where(Account.email == email)
        ).scalar_one_or_none()
        if existing:
            raise AccountExistsError(f"An account for {email} already exists")

        account = Account(
            member_id=self._generate_member_id(session),
            email=email,
            name=name,
            balance=0,
            lifetime_points=0,
            tier=floor_tier,
        )
        session.add(account)
        try:
            session.flush()
        except sa_exc.IntegrityError as e:
            # Lost a race with a concurrent registration for the same email.
            raise AccountExistsError(f"An account for {email} already exists") from e
        logger.info("Registered account %s (member %s)", account.id, account.member_id)
        return account

    def get_account(self, session: Session, user_id: str, *, for_update: bool = False) -> Account:
        query = select(Account).where(Account.id == user_id)
        if for_update:
            query = query.with_for_update()
        account = session.execute(query).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(f"Account {user_id} not found")
        return account

    def get_account_by_member_id(self, session: Session, member_id: str) -> Account:
        account = session.execute(
            select(Account).where(Account.member_id == member_id.upper())
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(f"Member {member_id} not found")
        return account

    def get_reward(self, session: Session, reward_id: int) -> Optional[Reward]:
        return session.get(Reward, reward_id)

    def add_reward(self, session: Session, name: str, points_cost: int, *,
                   category: str = "general", description: Optional[str] = None,
                   active: bool = True) -> Reward:
        reward = Reward(
            name=name, points_cost=points_cost, category=category,
            description=description, active=active,
        )
        session.add(reward)
        session.flush()
        return reward

    def seed_default_rewards(self) -> int:
        with self.transaction() as session:
            count = session.execute(select(func.count(Reward.id))).scalar_one()
            if count:
                return 0
            for item in DEFAULT_REWARDS:
                self.add_reward(session, **item)
        logger.info("Seeded %d default rewards", len(DEFAULT_REWARDS))
        return len(DEFAULT_REWARDS)

    def _generate_member_id(self, session: Session) -> str:
        while True:
            candidate = "".join(secrets.choice(MEMBER_ID_ALPHABET) for _ in range(MEMBER_ID_LENGTH))
            taken = session.execute(
                select(Account.id).where(Account.member_id == candidate)
            ).scalar_one_or_none()
            if not taken:
                return candidate

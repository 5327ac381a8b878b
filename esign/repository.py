
import threading
from contextlib import ExitStack, contextmanager
from typing import Iterator, List, Optional, Tuple, Type, TypeVar

from sqlmodel import Session, SQLModel, select

from .models import Signer, SignerRole

T = TypeVar("T", bound=SQLModel)

# locks are always taken in this order so two transactions never wait on each other
LOCK_ORDER = {"envelope": 0, "signer": 1, "document": 2, "audit": 3}

LockKey = Tuple[str, int]


class KeyedLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def lock_for(self, key: LockKey) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


class Repository:
    """Atomic get/create/update over SQLModel tables, keyed by entity id."""

    def __init__(self, engine):
        self.engine = engine
        self._locks = KeyedLocks()

    def session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    @contextmanager
    def hold(self, *keys: LockKey) -> Iterator[None]:
        ordered = sorted(set(keys), key=lambda k: (LOCK_ORDER.get(k[0], len(LOCK_ORDER)), k[1]))
        with ExitStack() as stack:
            for key in ordered:
                stack.enter_context(self._locks.lock_for(key))
            yield

    @contextmanager
    def transaction(self, *keys: LockKey) -> Iterator[Session]:
        """
        Open a session holding the in-process locks for ``keys``.

        Commits when the block exits cleanly, rolls back otherwise. Rows read
        with :meth:`locked` are also selected FOR UPDATE on backends that
        support row locks.
        """
        with self.hold(*keys):
            with self.session() as session:
                try:
                    yield session
                    session.commit()
                except Exception:
                    session.rollback()
                    raise

    @staticmethod
    def locked(session: Session, model: Type[T], entity_id: int) -> Optional[T]:
        return session.get(model, entity_id, with_for_update=True)

    def get(self, model: Type[T], entity_id: int) -> Optional[T]:
        with self.session() as session:
            return session.get(model, entity_id)

    def first(self, model: Type[T], **filters) -> Optional[T]:
        stmt = select(model)
        for name, value in filters.items():
            stmt = stmt.where(getattr(model, name) == value)
        with self.session() as session:
            return session.exec(stmt).first()

    def create(self, obj: T) -> T:
        with self.session() as session:
            session.add(obj)
            session.commit()
            session.refresh(obj)
            return obj

    def update(self, model: Type[T], entity_id: int, **changes) -> Optional[T]:
        with self.transaction((model.__tablename__, entity_id)) as session:
            obj = self.locked(session, model, entity_id)
            if obj is None:
                return None
            for key, value in changes.items():
                setattr(obj, key, value)
            session.add(obj)
        return obj

    def signers_of(
        self,
        envelope_id: int,
        role: Optional[SignerRole] = None,
        session: Optional[Session] = None,
    ) -> List[Signer]:
        stmt = select(Signer).where(Signer.envelope_id == envelope_id)
        if role is not None:
            stmt = stmt.where(Signer.role == role)
        stmt = stmt.order_by(Signer.routing_order, Signer.id)
        if session is not None:
            return list(session.exec(stmt).all())
        with self.session() as own:
            return list(own.exec(stmt).all())

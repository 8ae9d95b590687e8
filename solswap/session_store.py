from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from .errors import DuplicateTransaction, NotFound
from .models import (
    ORDER_BEARING_STATES,
    Analytics,
    Order,
    OrderStatus,
    Session,
    SessionState,
)

logger = logging.getLogger("solswap.store")


class SessionStore:
    """Session and order storage keyed by user id, with optional JSON persistence."""

    def __init__(self, path: Optional[Path] = None, clock: Callable[[], float] = time.time) -> None:
        """Purpose: Initialize the store and hydrate from disk if available.
        Inputs/Outputs: Inputs are an optional file path and a wall-clock function.
        Side Effects / State: Loads sessions/orders into memory and rebuilds the
            signature index.
        Dependencies: Calls _load; relies on Session/Order models.
        Failure Modes: JSON decode errors are logged and leave empty caches.
        If Removed: The conversation engine has nowhere to keep state.
        Testing Notes: Persist, re-open with the same path and compare records.
        """
        # Keep configuration and preload persisted records if present.
        self._path = path
        self._clock = clock
        self._lock = threading.RLock()
        self._user_locks: Dict[str, threading.Lock] = {}
        self._sessions: Dict[str, Session] = {}
        self._orders: Dict[str, Order] = {}
        self._signatures: Dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        """Purpose: Load persisted sessions and orders from disk into memory.
        Inputs/Outputs: Reads from self._path; no return value.
        Side Effects / State: Populates _sessions, _orders and _signatures.
        Dependencies: Uses json.loads and pydantic model validation.
        Failure Modes: Missing file or JSONDecodeError results in an empty store.
        If Removed: Conversations in flight are lost on restart.
        Testing Notes: Corrupt JSON should not crash; valid JSON should hydrate caches.
        """
        # Read and decode persisted JSON if present.
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("path=%s store file is not valid JSON; starting empty", self._path)
            return
        for raw in data.get("sessions", []):
            session = Session.model_validate(raw)
            self._sessions[session.user_id] = session
        for raw in data.get("orders", []):
            order = Order.model_validate(raw)
            self._orders[order.id] = order
            if order.tx_signature:
                self._signatures[order.tx_signature] = order.id

    def _persist(self) -> None:
        # Serialize current caches to disk; no-op for in-memory stores.
        if not self._path:
            return
        payload = {
            "sessions": [session.model_dump(mode="json") for session in self._sessions.values()],
            "orders": [order.model_dump(mode="json") for order in self._orders.values()],
        }
        self._path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def user_lock(self, user_id: str) -> threading.Lock:
        """Purpose: Return the lock serialising all turns and events for one user.
        Inputs/Outputs: Input is user_id; output is a threading.Lock (same object per user).
        Side Effects / State: Lazily creates the lock entry.
        Dependencies: Guarded by the store-wide lock.
        Failure Modes: None.
        If Removed: Concurrent turns for one user interleave their read-modify-write.
        Testing Notes: Same user yields the same lock; different users do not.
        """
        # Create-or-get under the store lock so two threads never get different locks.
        with self._lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._user_locks[user_id] = lock
            return lock

    @contextmanager
    def hold_user(self, user_id: str) -> Iterator[None]:
        """Hold the user's lock, retrying if cleanup replaced it before it was acquired."""
        while True:
            lock = self.user_lock(user_id)
            lock.acquire()
            with self._lock:
                if self._user_locks.get(user_id) is lock:
                    break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def get_session(self, user_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(user_id)
            return session.model_copy() if session else None

    def get_or_create_session(self, user_id: str) -> Session:
        """Purpose: Fetch the user's session, creating it in ``start`` on first contact.
        Inputs/Outputs: Input is user_id; output is a Session snapshot.
        Side Effects / State: May insert a new session and persist.
        Dependencies: Uses _new_id and the store clock.
        Failure Modes: Persist can raise IO errors.
        If Removed: First turns from new users have no session to transition.
        Testing Notes: Two calls for one user return the same session id.
        """
        # Direct lookup by user id keeps the one-session-per-user invariant.
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                now = self._clock()
                session = Session(
                    id=_new_id(),
                    user_id=user_id,
                    state=SessionState.START,
                    order_id=None,
                    created_at=now,
                    updated_at=now,
                )
                self._sessions[user_id] = session
                logger.info("user=%s session=%s created", user_id, session.id)
                self._persist()
            return session.model_copy()

    def update_session(self, user_id: str, **changes: object) -> Session:
        """Purpose: Apply field changes to a user's session and bump updated_at.
        Inputs/Outputs: Inputs are user_id and field changes; output is the new snapshot.
        Side Effects / State: Replaces the stored session and persists.
        Dependencies: Uses ORDER_BEARING_STATES to keep order_id consistent.
        Failure Modes: Raises NotFound when the user has no session.
        If Removed: Transitions cannot be recorded.
        Testing Notes: Moving to ``start`` drops any order_id.
        """
        # Sessions outside the order-bearing states never reference an order.
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                raise NotFound(f"No session for user {user_id}")
            updated = session.model_copy(update={**changes, "updated_at": self._clock()})
            if updated.state not in ORDER_BEARING_STATES and updated.order_id is not None:
                updated = updated.model_copy(update={"order_id": None})
            self._sessions[user_id] = updated
            self._persist()
            return updated.model_copy()

    def insert_order(self, order: Order) -> Order:
        with self._lock:
            now = self._clock()
            saved = order.model_copy(update={"created_at": now, "updated_at": now})
            self._orders[saved.id] = saved
            if saved.tx_signature:
                self._signatures[saved.tx_signature] = saved.id
            self._persist()
            return saved.model_copy()

    def get_order(self, order_id: Optional[str]) -> Optional[Order]:
        if not order_id:
            return None
        with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy() if order else None

    def require_order(self, order_id: str) -> Order:
        order = self.get_order(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def update_order(self, order_id: str, **changes: object) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFound(f"Order {order_id} not found")
            updated = order.model_copy(update={**changes, "updated_at": self._clock()})
            self._orders[order_id] = updated
            self._persist()
            return updated.model_copy()

    def is_signature_used(self, tx_signature: str) -> bool:
        with self._lock:
            return tx_signature in self._signatures

    def record_deposit(self, order_id: str, tx_signature: Optional[str], from_address: Optional[str]) -> Order:
        """Purpose: Attach a reported deposit to an order and move it to ``confirming``.
        Inputs/Outputs: Inputs are order id, optional signature and sender address;
            output is the updated Order.
        Side Effects / State: Claims the signature in the global index and persists.
        Dependencies: Uses _signatures for cross-order uniqueness.
        Failure Modes: Raises DuplicateTransaction when another order already holds the
            signature; raises NotFound for a missing order.
        If Removed: The same on-chain deposit could be paid out twice.
        Testing Notes: A signature accepted on order A must fail on order B.
        """
        # Check-and-claim happens under one lock acquisition.
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFound(f"Order {order_id} not found")
            if tx_signature:
                owner = self._signatures.get(tx_signature)
                if owner is not None and owner != order_id:
                    raise DuplicateTransaction("This transaction has already been processed")
                if order.tx_signature and order.tx_signature != tx_signature:
                    self._signatures.pop(order.tx_signature, None)
                self._signatures[tx_signature] = order_id
            updated = order.model_copy(
                update={
                    "tx_signature": tx_signature,
                    "from_address": from_address,
                    "status": OrderStatus.CONFIRMING,
                    "updated_at": self._clock(),
                }
            )
            self._orders[order_id] = updated
            self._persist()
            return updated.model_copy()

    def find_order_by_payout_reference(self, reference: str) -> Optional[Order]:
        with self._lock:
            for order in self._orders.values():
                if order.payout_reference == reference:
                    return order.model_copy()
            return None

    def list_orders(self, user_id: Optional[str] = None) -> List[Order]:
        with self._lock:
            orders = [order for order in self._orders.values() if user_id is None or order.user_id == user_id]
            return [order.model_copy() for order in sorted(orders, key=lambda o: o.created_at)]

    def get_analytics(self) -> Analytics:
        """Purpose: Summarise store contents for health and analytics endpoints.
        Inputs/Outputs: No inputs; returns an Analytics model.
        Side Effects / State: None.
        Dependencies: Uses in-memory caches.
        Failure Modes: None; empty store yields zeros.
        If Removed: Operators lose visibility of funnel progress.
        Testing Notes: Create a session past ``start`` and verify active_sessions.
        """
        # Count under the lock for a consistent snapshot.
        with self._lock:
            sessions = list(self._sessions.values())
            orders = list(self._orders.values())
        return Analytics(
            total_sessions=len(sessions),
            active_sessions=sum(1 for s in sessions if s.state != SessionState.START),
            total_orders=len(orders),
            completed_orders=sum(1 for o in orders if o.status == OrderStatus.PAID),
            failed_orders=sum(1 for o in orders if o.status == OrderStatus.FAILED),
        )

    def cleanup_expired_sessions(self, retention_sec: float) -> int:
        """Remove sessions idle longer than ``retention_sec`` and their idle locks; returns how many were removed."""
        with self._lock:
            cutoff = self._clock() - retention_sec
            expired = [user_id for user_id, s in self._sessions.items() if s.updated_at < cutoff]
            for user_id in expired:
                self._sessions.pop(user_id, None)
            # Locks of users without a session go too, unless a turn is holding one.
            for user_id, lock in list(self._user_locks.items()):
                if user_id not in self._sessions and not lock.locked():
                    self._user_locks.pop(user_id, None)
            if expired:
                self._persist()
            return len(expired)

    def cleanup_expired_orders(self, retention_sec: float) -> int:
        """Remove never-funded orders older than ``retention_sec``; returns how many were removed."""
        with self._lock:
            cutoff = self._clock() - retention_sec
            expired = [
                order_id
                for order_id, o in self._orders.items()
                if o.status == OrderStatus.AWAITING_DEPOSIT and o.created_at < cutoff
            ]
            for order_id in expired:
                self._orders.pop(order_id, None)
            if expired:
                self._persist()
            return len(expired)


def _new_id() -> str:
    return str(uuid.uuid4())

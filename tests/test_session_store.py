"""
Tests for SessionStore invariants, signature uniqueness, persistence and cleanup.
"""

import pytest

from solswap.errors import DuplicateTransaction, NotFound
from solswap.models import Order, OrderStatus, SessionState, TokenSymbol
from solswap.session_store import SessionStore

HEX_TX = "a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d6e7f8a9b0c1d2e3f4a5b6c7d8e9f0a1b2"


def new_order(store: SessionStore, order_id: str, user_id: str = "u1") -> Order:
    return store.insert_order(
        Order(
            id=order_id,
            user_id=user_id,
            token_symbol=TokenSymbol.SOL,
            deposit_address="7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU",
            created_at=0.0,
            updated_at=0.0,
        )
    )


class TestSessions:
    """One session per user and order reference consistency"""

    def test_get_or_create_is_stable(self, store):
        first = store.get_or_create_session("u1")
        second = store.get_or_create_session("u1")
        assert first.id == second.id
        assert first.state == SessionState.START
        assert first.order_id is None

    def test_update_missing_session(self, store):
        with pytest.raises(NotFound):
            store.update_session("nobody", state=SessionState.AWAITING_TOKEN)

    def test_order_id_dropped_outside_order_states(self, store):
        store.get_or_create_session("u1")
        new_order(store, "o1")
        store.update_session("u1", state=SessionState.AWAITING_DEPOSIT, order_id="o1")
        session = store.update_session("u1", state=SessionState.START)
        assert session.order_id is None

    def test_updated_at_bumped(self, store, clock):
        created = store.get_or_create_session("u1")
        clock.advance(10)
        updated = store.update_session("u1", state=SessionState.AWAITING_TOKEN)
        assert updated.updated_at == created.updated_at + 10

    def test_snapshots_are_copies(self, store):
        session = store.get_or_create_session("u1")
        session.state = SessionState.PAID
        assert store.get_session("u1").state == SessionState.START

    def test_user_lock_per_user(self, store):
        assert store.user_lock("u1") is store.user_lock("u1")
        assert store.user_lock("u1") is not store.user_lock("u2")

    def test_hold_user_reacquires_after_cleanup(self, store, clock):
        stale = store.user_lock("u1")
        store.cleanup_expired_sessions(10)
        with store.hold_user("u1"):
            assert store.user_lock("u1") is not stale
            assert store.user_lock("u1").locked()
        assert not store.user_lock("u1").locked()


class TestDeposits:
    """Global transaction signature uniqueness"""

    def test_record_deposit_moves_to_confirming(self, store):
        new_order(store, "o1")
        order = store.record_deposit("o1", HEX_TX, None)
        assert order.status == OrderStatus.CONFIRMING
        assert order.tx_signature == HEX_TX
        assert store.is_signature_used(HEX_TX)

    def test_signature_rejected_on_second_order(self, store):
        new_order(store, "o1")
        new_order(store, "o2", user_id="u2")
        store.record_deposit("o1", HEX_TX, None)
        with pytest.raises(DuplicateTransaction):
            store.record_deposit("o2", HEX_TX, None)
        assert store.get_order("o2").status == OrderStatus.AWAITING_DEPOSIT

    def test_same_order_may_repeat_signature(self, store):
        new_order(store, "o1")
        store.record_deposit("o1", HEX_TX, None)
        assert store.record_deposit("o1", HEX_TX, None).tx_signature == HEX_TX

    def test_deposit_without_signature(self, store):
        new_order(store, "o1")
        order = store.record_deposit("o1", None, None)
        assert order.status == OrderStatus.CONFIRMING
        assert order.tx_signature is None

    def test_missing_order(self, store):
        with pytest.raises(NotFound):
            store.record_deposit("missing", HEX_TX, None)
        with pytest.raises(NotFound):
            store.require_order("missing")
        assert store.get_order(None) is None


class TestPersistence:
    def test_round_trip_through_file(self, tmp_path, clock):
        path = tmp_path / "sessions.json"
        store = SessionStore(path, clock=clock)
        store.get_or_create_session("u1")
        new_order(store, "o1")
        store.record_deposit("o1", HEX_TX, None)
        store.update_session("u1", state=SessionState.CONFIRMING, order_id="o1")

        reopened = SessionStore(path, clock=clock)
        assert reopened.get_session("u1").order_id == "o1"
        assert reopened.get_order("o1").status == OrderStatus.CONFIRMING
        assert reopened.is_signature_used(HEX_TX)

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text("{not json", encoding="utf-8")
        store = SessionStore(path)
        assert store.get_session("u1") is None


class TestAnalyticsAndCleanup:
    def test_analytics_counts(self, store):
        store.get_or_create_session("u1")
        store.get_or_create_session("u2")
        store.update_session("u2", state=SessionState.AWAITING_TOKEN)
        new_order(store, "o1")
        new_order(store, "o2")
        store.update_order("o1", status=OrderStatus.PAID)
        store.update_order("o2", status=OrderStatus.FAILED)
        analytics = store.get_analytics()
        assert analytics.total_sessions == 2
        assert analytics.active_sessions == 1
        assert analytics.total_orders == 2
        assert analytics.completed_orders == 1
        assert analytics.failed_orders == 1

    def test_cleanup_expired_sessions(self, store, clock):
        store.get_or_create_session("u1")
        clock.advance(100)
        store.get_or_create_session("u2")
        assert store.cleanup_expired_sessions(50) == 1
        assert store.get_session("u1") is None
        assert store.get_session("u2") is not None

    def test_cleanup_drops_idle_user_locks(self, engine, store, clock):
        for n in range(500):
            engine.handle_turn(f"user{n}", "Hi")
        assert len(store._user_locks) == 500
        clock.advance(100)
        assert store.cleanup_expired_sessions(10) == 500
        assert len(store._user_locks) == 0

    def test_cleanup_keeps_held_and_live_locks(self, store, clock):
        store.get_or_create_session("idle")
        clock.advance(100)
        store.get_or_create_session("live")
        store.user_lock("live")
        held = store.user_lock("busy")
        held.acquire()
        try:
            store.cleanup_expired_sessions(50)
            assert set(store._user_locks) == {"live", "busy"}
            assert store.user_lock("busy") is held
        finally:
            held.release()

    def test_cleanup_only_unfunded_orders(self, store, clock):
        new_order(store, "o1")
        new_order(store, "o2")
        store.record_deposit("o2", HEX_TX, None)
        clock.advance(100)
        assert store.cleanup_expired_orders(50) == 1
        assert store.get_order("o1") is None
        assert store.get_order("o2") is not None

    def test_find_by_payout_reference(self, store):
        new_order(store, "o1")
        store.update_order("o1", payout_reference="PS_ref")
        assert store.find_order_by_payout_reference("PS_ref").id == "o1"
        assert store.find_order_by_payout_reference("nope") is None

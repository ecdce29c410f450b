# tests/test_state_machine.py
"""Tests for session lifecycle transitions"""
from datetime import datetime, timedelta, timezone

import pytest

from app.core.engine import state_machine as sm
from app.core.engine.domain import Session, SessionStatus
from app.core.engine.errors import InvalidTransition

S = SessionStatus
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
LATER = NOW + timedelta(minutes=1)


def _session(status=S.DISCONNECTED, **fields) -> Session:
    return Session(id="s1", tenant_id="t1", display_name="Sales", status=status, version=1, **fields)


def _waiting(qr="ABC") -> Session:
    return _session(S.WAITING_QR, qr_code=qr, qr_expires_at=NOW + timedelta(seconds=60))


def _connected(phone="+551199999") -> Session:
    return _session(S.CONNECTED, phone_number=phone, connected_at=NOW)


class TestConnectCommand:
    @pytest.mark.parametrize("status", [S.DISCONNECTED, S.ERROR, S.WAITING_QR])
    def test_connect_allowed(self, status):
        sm.check_connect(_session(status))

    @pytest.mark.parametrize("status", [S.CONNECTED, S.RECONNECTING, S.BANNED])
    def test_connect_rejected(self, status):
        with pytest.raises(InvalidTransition):
            sm.check_connect(_session(status))

    def test_begin_connect_without_qr(self):
        t = sm.begin_connect(_session(last_error="old"), NOW)
        assert t.changed
        assert t.status == S.WAITING_QR
        assert t.session.qr_code is None
        assert t.session.last_error is None

    def test_begin_connect_with_immediate_qr(self):
        t = sm.begin_connect(_session(), NOW, qr_code="QR1", qr_ttl_seconds=45)
        assert t.status == S.WAITING_QR
        assert t.session.qr_code == "QR1"
        assert t.session.qr_expires_at == NOW + timedelta(seconds=45)

    def test_begin_connect_overtaken_by_connected_event(self):
        session = _connected()
        t = sm.begin_connect(session, NOW, qr_code="QR1")
        assert not t.changed
        assert t.session is session

    def test_record_connect_failure_keeps_status(self):
        t = sm.record_connect_failure(_session(S.ERROR), "Gateway connect failed: timed out")
        assert t.changed
        assert t.status == S.ERROR
        assert t.session.last_error == "Gateway connect failed: timed out"
        assert not sm.record_connect_failure(t.session, "Gateway connect failed: timed out").changed


class TestDisconnectCommand:
    @pytest.mark.parametrize("session", [_waiting(), _connected(), _session(S.RECONNECTING), _session(S.ERROR)])
    def test_disconnect(self, session):
        t = sm.apply_disconnect_command(session, NOW)
        assert t.status == S.DISCONNECTED
        assert t.session.qr_code is None
        assert t.session.disconnected_at == NOW

    def test_disconnect_when_disconnected_is_noop(self):
        assert not sm.apply_disconnect_command(_session(), NOW).changed

    def test_disconnect_keeps_phone(self):
        t = sm.apply_disconnect_command(_connected(), NOW, error="disconnect request failed")
        assert t.session.phone_number == "+551199999"
        assert t.session.last_error == "disconnect request failed"

    def test_banned_rejected(self):
        with pytest.raises(InvalidTransition):
            sm.apply_disconnect_command(_session(S.BANNED), NOW)


class TestQrUpdated:
    def test_enters_waiting_qr(self):
        t = sm.apply_qr_updated(_session(), "ABC", NOW, qr_ttl_seconds=60)
        assert t.status == S.WAITING_QR
        assert t.session.qr_code == "ABC"
        assert t.session.qr_expires_at == NOW + timedelta(seconds=60)

    def test_gateway_expiry_wins(self):
        expires = NOW + timedelta(seconds=20)
        t = sm.apply_qr_updated(_session(), "ABC", NOW, expires_at=expires)
        assert t.session.qr_expires_at == expires

    def test_same_qr_is_noop(self):
        session = _waiting("ABC")
        t = sm.apply_qr_updated(session, "ABC", LATER)
        assert not t.changed
        assert t.session.qr_expires_at == session.qr_expires_at

    def test_new_qr_replaces_old(self):
        t = sm.apply_qr_updated(_waiting("ABC"), "DEF", LATER, qr_ttl_seconds=60)
        assert t.changed
        assert t.session.qr_code == "DEF"
        assert t.session.qr_expires_at == LATER + timedelta(seconds=60)

    def test_banned_rejected(self):
        with pytest.raises(InvalidTransition):
            sm.apply_qr_updated(_session(S.BANNED), "ABC", NOW)


class TestConnected:
    def test_from_waiting_qr_clears_qr(self):
        t = sm.apply_connected(_waiting(), "+551199999", NOW)
        assert t.status == S.CONNECTED
        assert t.session.phone_number == "+551199999"
        assert t.session.qr_code is None
        assert t.session.qr_expires_at is None
        assert t.session.connected_at == NOW

    def test_repeat_is_noop(self):
        session = _connected()
        t = sm.apply_connected(session, "+551199999", LATER)
        assert not t.changed
        assert t.session.connected_at == NOW

    def test_reconnect_without_phone_keeps_stored_number(self):
        t = sm.apply_connected(_session(S.RECONNECTING, phone_number="+551199999"), None, NOW)
        assert t.status == S.CONNECTED
        assert t.session.phone_number == "+551199999"

    def test_first_connect_without_phone_rejected(self):
        with pytest.raises(InvalidTransition):
            sm.apply_connected(_waiting(), None, NOW)

    def test_banned_rejected(self):
        with pytest.raises(InvalidTransition):
            sm.apply_connected(_session(S.BANNED, phone_number="+551199999"), "+551199999", NOW)


class TestDisconnected:
    @pytest.mark.parametrize("status", [S.CONNECTED, S.RECONNECTING])
    def test_from_live_states(self, status):
        t = sm.apply_disconnected(_session(status, phone_number="+551199999"), "logged out", NOW)
        assert t.status == S.DISCONNECTED
        assert t.session.last_error == "logged out"
        assert t.session.phone_number == "+551199999"

    def test_repeat_is_noop(self):
        assert not sm.apply_disconnected(_session(), "logged out", NOW).changed

    @pytest.mark.parametrize("status", [S.WAITING_QR, S.ERROR, S.BANNED])
    def test_late_disconnect_ignored(self, status):
        with pytest.raises(InvalidTransition):
            sm.apply_disconnected(_session(status), None, NOW)


class TestReportedStatus:
    def test_reconnecting_from_connected(self):
        t = sm.apply_reported_status(_connected(), S.RECONNECTING, None, NOW)
        assert t.status == S.RECONNECTING
        assert t.session.phone_number == "+551199999"

    def test_reconnecting_clears_last_error(self):
        session = _session(S.CONNECTED, phone_number="+551199999", last_error="stream hiccup")
        t = sm.apply_reported_status(session, S.RECONNECTING, None, NOW)
        assert t.status == S.RECONNECTING
        assert t.session.last_error is None

    def test_reconnecting_from_disconnected_rejected(self):
        with pytest.raises(InvalidTransition):
            sm.apply_reported_status(_session(), S.RECONNECTING, None, NOW)

    def test_banned_is_terminal(self):
        t = sm.apply_reported_status(_connected(), S.BANNED, "account banned", NOW)
        assert t.status == S.BANNED
        assert t.session.last_error == "account banned"
        assert not sm.apply_reported_status(t.session, S.BANNED, "again", NOW).changed
        with pytest.raises(InvalidTransition):
            sm.apply_reported_status(t.session, S.ERROR, "boom", NOW)

    def test_error_records_reason(self):
        t = sm.apply_reported_status(_waiting(), S.ERROR, "stream errored", NOW)
        assert t.status == S.ERROR
        assert t.session.qr_code is None
        assert t.session.last_error == "stream errored"
        assert not sm.apply_reported_status(t.session, S.ERROR, "stream errored", LATER).changed

    def test_connected_not_reportable(self):
        with pytest.raises(InvalidTransition):
            sm.apply_reported_status(_session(), S.CONNECTED, None, NOW)


class TestReconcile:
    def test_snapshot_connected(self):
        snapshot = sm.GatewaySnapshot(status=S.CONNECTED, phone_number="+551199999")
        t = sm.reconcile(_waiting(), snapshot, NOW)
        assert t.status == S.CONNECTED

    def test_snapshot_disconnected_overrides_waiting_qr(self):
        snapshot = sm.GatewaySnapshot(status=S.DISCONNECTED, error="qr timeout")
        t = sm.reconcile(_waiting(), snapshot, NOW)
        assert t.status == S.DISCONNECTED
        assert t.session.qr_code is None
        assert t.session.last_error == "qr timeout"

    def test_snapshot_waiting_qr_with_code(self):
        snapshot = sm.GatewaySnapshot(status=S.WAITING_QR, qr_code="NEW")
        t = sm.reconcile(_session(), snapshot, NOW, qr_ttl_seconds=30)
        assert t.session.qr_code == "NEW"
        assert t.session.qr_expires_at == NOW + timedelta(seconds=30)

    def test_snapshot_reconnecting_clears_last_error(self):
        session = _session(S.CONNECTED, phone_number="+551199999", last_error="stream hiccup")
        t = sm.reconcile(session, sm.GatewaySnapshot(status=S.RECONNECTING), NOW)
        assert t.status == S.RECONNECTING
        assert t.session.last_error is None

    def test_matching_snapshot_is_noop(self):
        snapshot = sm.GatewaySnapshot(status=S.CONNECTED, phone_number="+551199999")
        assert not sm.reconcile(_connected(), snapshot, LATER).changed


class TestPhoneInvariant:
    def test_phone_only_after_connected(self):
        session = _session()
        for step in (
            lambda s: sm.begin_connect(s, NOW),
            lambda s: sm.apply_qr_updated(s, "ABC", NOW),
            lambda s: sm.apply_reported_status(s, S.ERROR, "x", NOW),
            lambda s: sm.apply_disconnect_command(s, NOW),
        ):
            session = step(session).session
            assert session.phone_number is None

        session = sm.apply_qr_updated(session, "ABC", NOW).session
        session = sm.apply_connected(session, "+551199999", NOW).session
        session = sm.apply_disconnected(session, None, LATER).session
        assert session.phone_number == "+551199999"

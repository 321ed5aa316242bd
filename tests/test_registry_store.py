"""Tests for identity and guest grant store operations."""

from datetime import datetime, timedelta

import pytest
from sqlmodel import select

from guestgate.exceptions import ValidationError
from guestgate.registry.models import Guest, User, utcnow
from guestgate.registry.store import (
    get_active_guests,
    get_expiring_guests,
    get_guests_by_macs,
    get_latest_guest_by_mac,
    get_or_create_user,
    get_unrevoked_expired_guests,
    is_disposable_email,
    is_valid_code,
    is_valid_email,
    is_valid_mac,
    list_guests,
    mark_revoked,
    normalize_mac,
    require_email,
    require_mac,
    sanitize_name,
    set_nickname,
    touch_last_seen,
    upsert_guest,
)

NOW = datetime(2026, 3, 15, 12, 0, 0)


def _user(session, email="guest@example.com", name="Guest") -> User:
    return get_or_create_user(session, email, name)


def _grant(session, user, mac, expires_at, **kwargs) -> Guest:
    guest = Guest(
        user_id=user.id,
        mac_address=mac,
        authorized_at=NOW - timedelta(days=1),
        expires_at=expires_at,
        **kwargs,
    )
    session.add(guest)
    session.commit()
    session.refresh(guest)
    return guest


class TestNormalizeMac:
    def test_already_normalized(self):
        assert normalize_mac("aa:bb:cc:dd:ee:ff") == "aa:bb:cc:dd:ee:ff"

    def test_uppercase(self):
        assert normalize_mac("AA:BB:CC:DD:EE:FF") == "aa:bb:cc:dd:ee:ff"

    def test_dash_separated(self):
        assert normalize_mac("AA-BB-CC-DD-EE-FF") == "aa:bb:cc:dd:ee:ff"

    def test_cisco_dotted(self):
        assert normalize_mac("aabb.ccdd.eeff") == "aa:bb:cc:dd:ee:ff"

    def test_bare_hex(self):
        assert normalize_mac("AABBCCDDEEFF") == "aa:bb:cc:dd:ee:ff"


class TestValidation:
    @pytest.mark.parametrize(
        "mac", ["aa:bb:cc:dd:ee:ff", "AA-BB-CC-DD-EE-FF", "aabbccddeeff"]
    )
    def test_valid_macs(self, mac):
        assert is_valid_mac(mac)

    @pytest.mark.parametrize("mac", [None, "", "aa:bb:cc", "zz:bb:cc:dd:ee:ff", "aa:bb:cc:dd:ee:ff:00"])
    def test_invalid_macs(self, mac):
        assert not is_valid_mac(mac)

    def test_require_mac_raises(self):
        with pytest.raises(ValidationError):
            require_mac("not-a-mac")

    def test_email(self):
        assert is_valid_email("a@example.com")
        assert not is_valid_email("not-an-email")
        assert not is_valid_email(None)

    def test_require_email_normalizes(self):
        assert require_email("  Guest@Example.COM ") == "guest@example.com"

    def test_code(self):
        assert is_valid_code("012345")
        assert not is_valid_code("12345")
        assert not is_valid_code("12345a")
        assert not is_valid_code(None)

    def test_sanitize_name_strips_markup(self):
        assert sanitize_name("<script>alert(1)</script>Jane <b>Doe</b>") == "Jane Doe"

    def test_sanitize_name_keeps_allowed_punctuation(self):
        assert sanitize_name("Mary-Jane O'Neil Jr.") == "Mary-Jane O'Neil Jr."

    def test_sanitize_name_truncates(self):
        assert len(sanitize_name("x" * 250)) == 100


class TestDisposableEmail:
    @pytest.mark.parametrize(
        "email",
        [
            "test@10minutemail.com",
            "user@guerrillamail.com",
            "fake@mailinator.com",
            "throwaway@yopmail.com",
        ],
    )
    def test_known_providers(self, email):
        assert is_disposable_email(email)

    @pytest.mark.parametrize(
        "email",
        ["user@gmail.com", "support@outlook.com", "info@yahoo.com", "guest@example.com"],
    )
    def test_regular_providers(self, email):
        assert not is_disposable_email(email)

    def test_case_and_whitespace(self):
        assert is_disposable_email("Test@10MinuteMail.COM")
        assert is_disposable_email("\tuser@mailinator.com\n")

    @pytest.mark.parametrize("email", ["not-an-email", "", "@", "user@", "@mailinator.com", None, 123])
    def test_malformed_input(self, email):
        assert not is_disposable_email(email)

    def test_exact_domain_only(self):
        assert not is_disposable_email("user@sub.mailinator.com")
        assert not is_disposable_email("mailinator.com@gmail.com")


class TestUsers:
    def test_get_or_create_is_idempotent(self, session):
        first = get_or_create_user(session, "Guest@Example.com", "Guest")
        second = get_or_create_user(session, "guest@example.com", "Other")
        assert first.id == second.id
        assert second.email == "guest@example.com"
        assert second.email_verified is True


class TestUpsertGuest:
    def test_creates_new_grant(self, session):
        user = _user(session)
        guest, is_returning = upsert_guest(
            session, user, "AA:BB:CC:DD:EE:FF", NOW + timedelta(days=7), ip_address="10.0.0.5", now=NOW
        )
        assert is_returning is False
        assert guest.mac_address == "aa:bb:cc:dd:ee:ff"
        assert guest.auth_count == 1
        assert guest.expires_at == NOW + timedelta(days=7)

    def test_unsaved_user_rejected(self, session):
        user = User(email="ghost@example.com", name="Ghost")
        with pytest.raises(ValueError):
            upsert_guest(session, user, "aa:bb:cc:dd:ee:ff", NOW + timedelta(days=7), now=NOW)
        assert session.exec(select(Guest)).all() == []

    def test_reauthorization_updates_same_row(self, session):
        user = _user(session)
        first, _ = upsert_guest(session, user, "aa:bb:cc:dd:ee:ff", NOW + timedelta(days=7), now=NOW)
        later = NOW + timedelta(days=2)
        second, is_returning = upsert_guest(
            session, user, "AA-BB-CC-DD-EE-FF", later + timedelta(days=7), ip_address="10.0.0.9", now=later
        )
        assert is_returning is True
        assert second.id == first.id
        assert second.auth_count == 2
        assert second.expires_at == later + timedelta(days=7)
        assert second.ip_address == "10.0.0.9"
        assert len(list_guests(session)) == 1

    def test_reauthorization_never_shortens(self, session):
        user = _user(session)
        upsert_guest(session, user, "aa:bb:cc:dd:ee:ff", NOW + timedelta(days=30), now=NOW)
        guest, _ = upsert_guest(session, user, "aa:bb:cc:dd:ee:ff", NOW + timedelta(days=7), now=NOW)
        assert guest.expires_at == NOW + timedelta(days=30)

    def test_same_mac_different_users(self, session):
        alice = _user(session, "alice@example.com")
        bob = _user(session, "bob@example.com")
        upsert_guest(session, alice, "aa:bb:cc:dd:ee:ff", NOW + timedelta(days=1), now=NOW)
        _, is_returning = upsert_guest(session, bob, "aa:bb:cc:dd:ee:ff", NOW + timedelta(days=2), now=NOW)
        assert is_returning is False
        assert len(get_guests_by_macs(session, ["aa:bb:cc:dd:ee:ff"])) == 2
        latest = get_latest_guest_by_mac(session, "AA:BB:CC:DD:EE:FF")
        assert latest.user_id == bob.id

    def test_naive_utc_survives_reload(self, session):
        stamp = utcnow()
        assert stamp.tzinfo is None
        user = _user(session)
        guest, _ = upsert_guest(session, user, "aa:bb:cc:dd:ee:ff", stamp + timedelta(days=7), now=stamp)
        session.expire_all()
        reloaded = session.get(Guest, guest.id)
        assert reloaded.expires_at.tzinfo is None
        assert reloaded.expires_at == stamp + timedelta(days=7)
        assert reloaded.authorized_at == stamp


class TestQueries:
    def test_active_guests(self, session):
        user = _user(session)
        _grant(session, user, "aa:aa:aa:aa:aa:01", NOW + timedelta(hours=1))
        _grant(session, user, "aa:aa:aa:aa:aa:02", NOW - timedelta(hours=1))
        active = get_active_guests(session, NOW)
        assert [g.mac_address for g in active] == ["aa:aa:aa:aa:aa:01"]

    def test_unrevoked_expired_guests(self, session):
        user = _user(session)
        pending = _grant(session, user, "aa:aa:aa:aa:aa:01", NOW - timedelta(hours=1))
        _grant(
            session,
            user,
            "aa:aa:aa:aa:aa:02",
            NOW - timedelta(hours=1),
            revoked_at=NOW - timedelta(minutes=30),
        )
        # Revoked before its latest expiry, so it is due again
        again = _grant(
            session,
            user,
            "aa:aa:aa:aa:aa:03",
            NOW - timedelta(hours=1),
            revoked_at=NOW - timedelta(days=3),
        )
        ids = {g.id for g in get_unrevoked_expired_guests(session, NOW)}
        assert ids == {pending.id, again.id}

    def test_mark_revoked_removes_from_pending(self, session):
        user = _user(session)
        guest = _grant(session, user, "aa:aa:aa:aa:aa:01", NOW - timedelta(hours=1))
        mark_revoked(session, guest, now=NOW)
        assert get_unrevoked_expired_guests(session, NOW + timedelta(minutes=5)) == []

    def test_expiring_guests_window(self, session):
        user = _user(session)
        _grant(session, user, "aa:aa:aa:aa:aa:01", NOW + timedelta(hours=2))
        _grant(session, user, "aa:aa:aa:aa:aa:02", NOW + timedelta(hours=30))
        _grant(session, user, "aa:aa:aa:aa:aa:03", NOW - timedelta(hours=2))
        expiring = get_expiring_guests(session, now=NOW)
        assert len(expiring) == 1
        guest, owner = expiring[0]
        assert guest.mac_address == "aa:aa:aa:aa:aa:01"
        assert owner.email == "guest@example.com"

    def test_touch_last_seen_batches(self, session):
        user = _user(session)
        a = _grant(session, user, "aa:aa:aa:aa:aa:01", NOW + timedelta(hours=1))
        b = _grant(session, user, "aa:aa:aa:aa:aa:02", NOW + timedelta(hours=1))
        updated = touch_last_seen(session, ["AA:AA:AA:AA:AA:01", "aa:aa:aa:aa:aa:02"], now=NOW)
        assert updated == 2
        session.refresh(a)
        session.refresh(b)
        assert a.last_seen == NOW
        assert b.last_seen == NOW

    def test_touch_last_seen_empty(self, session):
        assert touch_last_seen(session, [], now=NOW) == 0


class TestNickname:
    def test_set_and_clear(self, session):
        user = _user(session)
        guest = _grant(session, user, "aa:aa:aa:aa:aa:01", NOW + timedelta(hours=1))
        assert set_nickname(session, guest.id, "<i>Jane's</i> phone").nickname == "Jane's phone"
        assert set_nickname(session, guest.id, None).nickname is None

    def test_truncates_to_50(self, session):
        user = _user(session)
        guest = _grant(session, user, "aa:aa:aa:aa:aa:01", NOW + timedelta(hours=1))
        assert len(set_nickname(session, guest.id, "n" * 80).nickname) == 50

    def test_unknown_guest(self, session):
        assert set_nickname(session, 999, "x") is None

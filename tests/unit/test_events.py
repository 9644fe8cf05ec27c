"""Tests for event construction, hashing and untrusted event parsing."""

import json

import pytest

from fedharness.federation.encoding import decode_base64
from fedharness.federation.events import (
    CREATE,
    JOIN_RULES,
    MAX_EVENT_SIZE,
    MEMBER,
    POWER_LEVELS,
    THIRD_PARTY_INVITE,
    EventBuilder,
    EventParseError,
    compute_event_id,
    parse_untrusted_event,
    redact,
    state_needed_for,
)
from fedharness.federation.signing import SigningIdentity, verify_json

ROOM_ID = "!room:origin.test"
ALICE = "@alice:origin.test"


@pytest.fixture
def identity():
    return SigningIdentity.generate("origin.test")


def _join_pdu(identity, room_version="5"):
    builder = EventBuilder(
        sender=ALICE,
        room_id=ROOM_ID,
        type=MEMBER,
        state_key=ALICE,
        content={"membership": "join"},
        prev_events=["$prev"],
        auth_events=["$create"],
        depth=3,
    )
    return builder.build(identity, room_version, origin_server_ts=1_000).to_pdu()


class TestBuild:
    def test_event_id_is_reference_hash(self, identity):
        pdu = _join_pdu(identity)
        event = parse_untrusted_event(pdu, "5")

        assert event.event_id.startswith("$")
        assert event.event_id == compute_event_id(pdu, "5")
        assert "event_id" not in pdu

    def test_room_version_three_uses_standard_alphabet(self, identity):
        pdu = _join_pdu(identity, "3")
        event_id = compute_event_id(pdu, "3")
        assert "-" not in event_id and "_" not in event_id
        assert compute_event_id(pdu, "4")[1:].replace("-", "+").replace("_", "/") == event_id[1:]

    def test_signature_covers_redacted_form(self, identity):
        pdu = _join_pdu(identity)
        verify_json(redact(pdu, "5"), "origin.test", identity.key_id, identity.verify_key)

    def test_event_id_ignores_unsigned(self, identity):
        pdu = _join_pdu(identity)
        with_unsigned = dict(pdu, unsigned={"age": 10})
        assert compute_event_id(with_unsigned, "5") == compute_event_id(pdu, "5")

    def test_template_omits_missing_state_key(self):
        builder = EventBuilder(sender=ALICE, room_id=ROOM_ID, type="m.room.message")
        assert "state_key" not in builder.to_template()

    def test_redaction_keeps_membership(self, identity):
        pdu = _join_pdu(identity)
        pdu["content"]["displayname"] = "Alice"
        assert redact(pdu, "5")["content"] == {"membership": "join"}


class TestParseUntrusted:
    def test_accepts_well_formed_bytes(self, identity):
        pdu = _join_pdu(identity)
        event = parse_untrusted_event(json.dumps(pdu).encode(), "5")

        assert event.sender == ALICE
        assert event.membership == "join"
        assert event.state_tuple == (MEMBER, ALICE)
        assert event.to_pdu() == pdu

    @pytest.mark.parametrize(
        "raw",
        [b"{not json", b"[1, 2]", b'"event"'],
    )
    def test_rejects_non_objects(self, raw):
        with pytest.raises(EventParseError):
            parse_untrusted_event(raw, "5")

    def test_rejects_missing_depth(self, identity):
        pdu = _join_pdu(identity)
        del pdu["depth"]
        with pytest.raises(EventParseError):
            parse_untrusted_event(pdu, "5")

    def test_rejects_string_depth(self, identity):
        pdu = _join_pdu(identity)
        pdu["depth"] = "3"
        with pytest.raises(EventParseError):
            parse_untrusted_event(pdu, "5")

    def test_rejects_negative_depth(self, identity):
        pdu = _join_pdu(identity)
        pdu["depth"] = -1
        with pytest.raises(EventParseError):
            parse_untrusted_event(pdu, "5")

    def test_rejects_unsupported_room_version(self, identity):
        with pytest.raises(EventParseError, match="unsupported room version"):
            parse_untrusted_event(_join_pdu(identity), "1")

    def test_rejects_explicit_event_id(self, identity):
        pdu = _join_pdu(identity)
        pdu["event_id"] = "$abc"
        with pytest.raises(EventParseError, match="event_id"):
            parse_untrusted_event(pdu, "5")

    def test_rejects_tampered_content(self, identity):
        pdu = _join_pdu(identity)
        pdu["content"]["membership"] = "leave"
        with pytest.raises(EventParseError, match="hash does not match"):
            parse_untrusted_event(pdu, "5")

    def test_rejects_missing_hash(self, identity):
        pdu = _join_pdu(identity)
        pdu["hashes"] = {}
        with pytest.raises(EventParseError, match="no sha256"):
            parse_untrusted_event(pdu, "5")

    def test_rejects_malformed_sender(self, identity):
        pdu = _join_pdu(identity)
        pdu["sender"] = "alice"
        with pytest.raises(EventParseError, match="malformed sender"):
            parse_untrusted_event(pdu, "5")

    def test_rejects_oversized_event(self):
        with pytest.raises(EventParseError, match="larger than"):
            parse_untrusted_event(b" " * (MAX_EVENT_SIZE + 1), "5")

    def test_content_hash_is_base64_sha256(self, identity):
        pdu = _join_pdu(identity)
        assert len(decode_base64(pdu["hashes"]["sha256"])) == 32


class TestStateNeededFor:
    def test_create_needs_nothing(self):
        assert state_needed_for(CREATE, "", ALICE, {}) == []

    def test_message_needs_create_power_levels_and_sender(self):
        assert state_needed_for("m.room.message", None, ALICE, {}) == [
            (CREATE, ""),
            (POWER_LEVELS, ""),
            (MEMBER, ALICE),
        ]

    def test_self_join_deduplicates_member(self):
        assert state_needed_for(MEMBER, ALICE, ALICE, {"membership": "join"}) == [
            (CREATE, ""),
            (POWER_LEVELS, ""),
            (MEMBER, ALICE),
            (JOIN_RULES, ""),
        ]

    def test_leave_skips_join_rules(self):
        needed = state_needed_for(MEMBER, ALICE, ALICE, {"membership": "leave"})
        assert (JOIN_RULES, "") not in needed

    def test_third_party_invite(self):
        content = {"membership": "invite", "third_party_invite": {"signed": {"token": "tok"}}}
        needed = state_needed_for(MEMBER, "@bob:hs", ALICE, content)
        assert needed[-1] == (THIRD_PARTY_INVITE, "tok")
        assert (MEMBER, "@bob:hs") in needed

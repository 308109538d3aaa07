"""Property-based tests for the OutboxEvent model."""

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from outrelay.core.event import (
    MAX_PAYLOAD_SIZE,
    EventKind,
    EventStatus,
    NewEvent,
    OutboxEvent,
    normalize_kinds,
)

valid_payload = st.fixed_dictionaries(
    {},
    optional={
        "to": st.emails(),
        "subject": st.text(max_size=20),
        "count": st.integers(min_value=0, max_value=1000),
    },
)
whitespace = st.sampled_from(["", " ", "  ", "\t", "\n", "   \t\n"])


@given(kind=st.sampled_from(list(EventKind)), payload=valid_payload)
def test_new_event_defaults(kind: EventKind, payload: dict):
    """A freshly built event is PENDING with no attempts and no lease."""
    event = OutboxEvent(kind=kind.value, payload=payload, tenant_id="school-1")

    assert event.status == EventStatus.PENDING
    assert event.attempt_count == 0
    assert event.worker_id is None
    assert event.claimed_at is None
    assert event.processed_at is None
    assert event.known_kind == kind


@given(count=st.integers(min_value=2, max_value=20))
def test_event_id_uniqueness(count: int):
    ids = [OutboxEvent(kind="EMAIL_SEND", tenant_id="t").id for _ in range(count)]
    assert len(ids) == len(set(ids))
    for event_id in ids:
        assert len(event_id) == 36
        assert [len(p) for p in event_id.split("-")] == [8, 4, 4, 4, 12]


def test_uppercase_uuid_is_normalized():
    event = OutboxEvent(
        id="6F1C2B9E-7A1D-4C3B-9E2F-0A1B2C3D4E5F", kind="EMAIL_SEND", tenant_id="t"
    )
    assert event.id == "6f1c2b9e-7a1d-4c3b-9e2f-0a1b2c3d4e5f"


@pytest.mark.parametrize("bad_id", ["", "not-a-uuid", "6f1c2b9e-7a1d-1c3b-9e2f-0a1b2c3d4e5f"])
def test_invalid_id_rejected(bad_id: str):
    with pytest.raises(ValidationError):
        OutboxEvent(id=bad_id, kind="EMAIL_SEND", tenant_id="t")


@given(blank=whitespace)
def test_blank_kind_rejected(blank: str):
    with pytest.raises(ValidationError):
        OutboxEvent(kind=blank, tenant_id="t")


@given(blank=whitespace)
def test_blank_tenant_rejected(blank: str):
    with pytest.raises(ValidationError):
        OutboxEvent(kind="EMAIL_SEND", tenant_id=blank)


def test_unknown_kind_is_accepted_but_not_known():
    """Unrecognized kinds are stored so they can be failed and dead-lettered."""
    event = OutboxEvent(kind="UNKNOWN_TYPE", tenant_id="t")
    assert event.kind == "UNKNOWN_TYPE"
    assert event.known_kind is None


def test_non_serializable_payload_rejected():
    with pytest.raises(ValidationError, match="JSON-serializable"):
        OutboxEvent(kind="EMAIL_SEND", tenant_id="t", payload={"when": object()})


def test_oversized_payload_rejected():
    with pytest.raises(ValidationError, match="maximum size"):
        OutboxEvent(kind="EMAIL_SEND", tenant_id="t", payload={"blob": "x" * MAX_PAYLOAD_SIZE})


def test_event_is_frozen():
    event = OutboxEvent(kind="EMAIL_SEND", tenant_id="t")
    with pytest.raises(ValidationError):
        event.status = EventStatus.SENT


def test_extra_fields_forbidden():
    with pytest.raises(ValidationError):
        OutboxEvent(kind="EMAIL_SEND", tenant_id="t", priority=1)


def test_attempt_count_cannot_be_negative():
    with pytest.raises(ValidationError):
        OutboxEvent(kind="EMAIL_SEND", tenant_id="t", attempt_count=-1)


@pytest.mark.parametrize("status", list(EventStatus))
def test_terminal_statuses(status: EventStatus):
    assert status.is_terminal == (status in (EventStatus.SENT, EventStatus.DEAD))


class TestNewEvent:
    def test_strips_kind_and_tenant(self):
        new_event = NewEvent(kind=" EMAIL_SEND ", tenant_id=" school-1 ")
        assert new_event.kind == "EMAIL_SEND"
        assert new_event.tenant_id == "school-1"
        assert new_event.max_attempts is None

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            NewEvent(kind="EMAIL_SEND", tenant_id="t", max_attempts=0)

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            NewEvent(kind="EMAIL_SEND", tenant_id="t", status="SENT")


class TestNormalizeKinds:
    def test_none_means_every_kind(self):
        assert normalize_kinds(None) is None

    def test_enum_members_and_strings(self):
        assert normalize_kinds([EventKind.EMAIL_SEND, "MESSAGE_SEND", "EMAIL_SEND"]) == frozenset(
            {"EMAIL_SEND", "MESSAGE_SEND"}
        )

    def test_single_string_is_one_kind(self):
        assert normalize_kinds("EMAIL_SEND") == frozenset({"EMAIL_SEND"})

    def test_empty_filter_rejected(self):
        with pytest.raises(ValueError, match="at least one"):
            normalize_kinds([])


class TestPayloadLimits:
    def test_payload_just_under_limit(self):
        data = "x" * (MAX_PAYLOAD_SIZE - 10)
        event = OutboxEvent(kind="ARCHIVE_DOCUMENT", tenant_id="t", payload={"k": data})
        assert len(event.payload["k"]) == MAX_PAYLOAD_SIZE - 10

    def test_unicode_payload_counts_bytes_not_chars(self):
        accented = "é" * (MAX_PAYLOAD_SIZE // 2 + 1)
        with pytest.raises(ValidationError, match="maximum size"):
            OutboxEvent(kind="EMAIL_SEND", tenant_id="t", payload={"body": accented})

    def test_nested_payload_survives(self):
        nested = {"level": 0}
        current = nested
        for i in range(50):
            current["child"] = {"level": i + 1}
            current = current["child"]

        event = OutboxEvent(kind="EMAIL_SEND", tenant_id="t", payload=nested)
        assert event.payload["child"]["child"]["level"] == 2

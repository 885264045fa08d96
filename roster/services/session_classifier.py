"""Classification of a user's participation in a session."""

import enum
from typing import Any

CO_HOST_MARKER = "co-host"
DEFAULT_SESSION_TYPE = "other"


class ParticipationKind(str, enum.Enum):
    HOST = "host"
    CO_HOST = "co_host"
    PARTICIPANT = "participant"


def slot_name(slots: list[Any] | None, index: int | None) -> str:
    if not slots or index is None or index < 0 or index >= len(slots):
        return ""
    slot = slots[index]
    if isinstance(slot, dict):
        return str(slot.get("name") or "")
    return str(slot or "")


def classify_participation(participation: Any, session: Any) -> ParticipationKind:
    """Decide whether a participation is the host, a co-host or a participant.

    The session owner is always the host, even when also listed as a
    participant. Otherwise a role id or slot name containing "co-host"
    (any case) makes a co-host.
    """
    if session.owner_id is not None and participation.user_id == session.owner_id:
        return ParticipationKind.HOST

    role_id = (participation.role_id or "").lower()
    name = slot_name(session.slots, participation.slot).lower()
    if CO_HOST_MARKER in role_id or CO_HOST_MARKER in name:
        return ParticipationKind.CO_HOST
    return ParticipationKind.PARTICIPANT


def session_type_of(session: Any) -> str:
    return session.session_type or DEFAULT_SESSION_TYPE

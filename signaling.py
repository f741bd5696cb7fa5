import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from backend import ConnectionRegistry, RoomDirectory
from events import ERROR, EXISTING_USERS, JOIN_ROOM, SIGNAL, SIGNAL_ERROR, USER_JOINED, USER_LEFT
from logging_config import get_logger
from schemas.signaling import (
    ErrorMessage,
    ExistingUsers,
    InboundMessage,
    JoinRoomRequest,
    SignalError,
    UserEvent,
    signal_payload_adapter,
)

logger = get_logger(__name__)


class SignalingError(Exception):
    pass


class InvalidMessageError(SignalingError):
    """Inbound frame could not be decoded or validated. State is left untouched."""

    def __init__(self, message: str, event: Optional[str] = None, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.event = event
        self.details = details

    def to_outbound(self, connection_id: str) -> "Outbound":
        error = ErrorMessage(message=self.message, event=self.event, details=self.details)
        return Outbound(connection_id, ERROR, error.model_dump(exclude_none=True))


def _validation_details(error: ValidationError) -> List[Dict[str, Any]]:
    return error.errors(include_url=False, include_context=False, include_input=False)


@dataclass(frozen=True)
class Outbound:
    """One message to deliver to one connection."""
    connection_id: str
    event: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_text(self) -> str:
        return json.dumps({"event": self.event, "data": self.data})


class EventBroadcaster:
    def __init__(self, registry: ConnectionRegistry, directory: RoomDirectory):
        self.registry = registry
        self.directory = directory

    def _to_members(self, room_id: str, excluding_user_id: str, event: str, data: Dict[str, Any]) -> List[Outbound]:
        effects = []
        for member in self.directory.members_excluding(room_id, excluding_user_id):
            connection_id = self.registry.resolve(member)
            if connection_id is None:
                logger.debug(f"Member {member} of room {room_id} has no live connection, skipping {event}")
                continue
            effects.append(Outbound(connection_id, event, data))
        return effects

    def announce_join(self, room_id: str, user_id: str) -> List[Outbound]:
        data = UserEvent(user_id=user_id).model_dump(by_alias=True)
        return self._to_members(room_id, user_id, USER_JOINED, data)

    def announce_leave(self, room_id: str, user_id: str) -> List[Outbound]:
        # A deleted room has no members left, so this yields nothing
        data = UserEvent(user_id=user_id).model_dump(by_alias=True)
        return self._to_members(room_id, user_id, USER_LEFT, data)

    def send_existing_users(self, connection_id: str, room_id: str, user_id: str) -> List[Outbound]:
        users = self.directory.members_excluding(room_id, user_id)
        return [Outbound(connection_id, EXISTING_USERS, ExistingUsers(users=users).model_dump())]


class SignalRouter:
    """Unicast of opaque signal payloads, addressed by user identity."""

    def __init__(self, registry: ConnectionRegistry, notify_sender: bool = False):
        self.registry = registry
        self.notify_sender = notify_sender

    def route(self, sender_connection_id: str, payload: Dict[str, Any]) -> List[Outbound]:
        target_user_id = payload.get("targetUserId")
        logger.info(
            f"Relaying signal: {payload.get('type')} from {payload.get('senderUserId')} "
            f"to {target_user_id} in room {payload.get('roomId')}"
        )
        target_connection_id = self.registry.resolve(target_user_id)
        if target_connection_id is None:
            logger.warning(f"Target user {target_user_id} not found or connection not mapped for signal relay")
            if self.notify_sender:
                error = SignalError(target_user_id=target_user_id)
                return [Outbound(sender_connection_id, SIGNAL_ERROR, error.model_dump(by_alias=True))]
            return []
        return [Outbound(target_connection_id, SIGNAL, payload)]


class SignalingCore:
    """Owns the registry and directory and turns inbound events into outbound effects.

    Every handler runs to completion synchronously, so on a single event loop
    bind + join + broadcast for one event are atomic to every other event.
    """

    def __init__(self, notify_signal_errors: bool = False):
        self.registry = ConnectionRegistry()
        self.directory = RoomDirectory()
        self.router = SignalRouter(self.registry, notify_sender=notify_signal_errors)
        self.broadcaster = EventBroadcaster(self.registry, self.directory)
        self.connections: Set[str] = set()

    def connect(self, connection_id: str) -> List[Outbound]:
        self.connections.add(connection_id)
        logger.info(f"Connection opened: {connection_id} (total connections: {len(self.connections)})")
        return []

    def join_room(self, connection_id: str, room_id: str, user_id: str) -> List[Outbound]:
        logger.info(f"User {user_id} (connection {connection_id}) joining room {room_id}")
        effects: List[Outbound] = []

        displaced_user_id = self.registry.bind(user_id, connection_id)
        if displaced_user_id is not None:
            # The connection switched identity; its old identity has no connection anymore
            for affected_room in self.directory.leave_all(displaced_user_id):
                effects.extend(self.broadcaster.announce_leave(affected_room, displaced_user_id))

        self.directory.join(room_id, user_id)
        logger.debug(f"Users in room {room_id}: {sorted(self.directory.members(room_id))}")

        effects.extend(self.broadcaster.send_existing_users(connection_id, room_id, user_id))
        effects.extend(self.broadcaster.announce_join(room_id, user_id))
        return effects

    def signal(self, connection_id: str, payload: Dict[str, Any]) -> List[Outbound]:
        try:
            signal_payload_adapter.validate_python(payload)
        except ValidationError as e:
            raise InvalidMessageError("Invalid signal payload", event=SIGNAL, details=_validation_details(e))
        return self.router.route(connection_id, payload)

    def disconnect(self, connection_id: str) -> List[Outbound]:
        self.connections.discard(connection_id)
        logger.info(f"Connection closed: {connection_id}")

        user_id = self.registry.identity_of(connection_id)
        if user_id is None:
            logger.info(f"No userId found for disconnected connection {connection_id}")
            return []

        self.registry.unbind(connection_id)
        effects: List[Outbound] = []
        for room_id in self.directory.leave_all(user_id):
            effects.extend(self.broadcaster.announce_leave(room_id, user_id))
        return effects

    def dispatch(self, connection_id: str, message: Any) -> List[Outbound]:
        """Decode one inbound frame (JSON text or an already parsed dict) and handle it."""
        if isinstance(message, (str, bytes)):
            try:
                message = json.loads(message)
            except (ValueError, RecursionError) as e:
                raise InvalidMessageError(f"Frame is not valid JSON: {e}")

        try:
            envelope = InboundMessage.model_validate(message)
        except ValidationError as e:
            raise InvalidMessageError("Malformed message envelope", details=_validation_details(e))

        if envelope.event == JOIN_ROOM:
            try:
                request = JoinRoomRequest.model_validate(envelope.data)
            except ValidationError as e:
                raise InvalidMessageError("Invalid join-room request", event=JOIN_ROOM, details=_validation_details(e))
            return self.join_room(connection_id, request.room_id, request.user_id)

        if envelope.event == SIGNAL:
            return self.signal(connection_id, envelope.data)

        raise InvalidMessageError(f"Unknown event '{envelope.event}'", event=envelope.event)

    def snapshot(self) -> Dict[str, List[str]]:
        return {room_id: sorted(self.directory.members(room_id)) for room_id in self.directory.rooms()}

from typing import Dict, List, Optional, Set

from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionRegistry:
    """Bidirectional map between a live connection handle and a user identity.

    A user identity maps to at most one connection and that connection maps
    back to exactly that identity; every mutation keeps the two maps in step.
    """

    def __init__(self):
        self._user_to_connection: Dict[str, str] = {}
        self._connection_to_user: Dict[str, str] = {}

    def bind(self, user_id: str, connection_id: str) -> Optional[str]:
        """Bind `user_id` to `connection_id`, overwriting older bindings of either.

        Returns the identity this connection was bound to before, if it differs.
        """
        previous_user = self._connection_to_user.get(connection_id)
        if previous_user is not None and previous_user != user_id:
            del self._user_to_connection[previous_user]
            logger.debug(f"Connection {connection_id} rebinding from {previous_user} to {user_id}")

        previous_connection = self._user_to_connection.get(user_id)
        if previous_connection is not None and previous_connection != connection_id:
            # Last bind wins; the older connection keeps running but loses the identity
            del self._connection_to_user[previous_connection]
            logger.warning(f"User {user_id} rebound from connection {previous_connection} to {connection_id}")

        self._user_to_connection[user_id] = connection_id
        self._connection_to_user[connection_id] = user_id
        logger.debug(f"Bound user {user_id} to connection {connection_id}")

        if previous_user is not None and previous_user != user_id:
            return previous_user
        return None

    def resolve(self, user_id: str) -> Optional[str]:
        return self._user_to_connection.get(user_id)

    def identity_of(self, connection_id: str) -> Optional[str]:
        return self._connection_to_user.get(connection_id)

    def unbind(self, connection_id: str) -> Optional[str]:
        """Remove the binding held by `connection_id`; returns the unbound identity."""
        user_id = self._connection_to_user.pop(connection_id, None)
        if user_id is None:
            logger.debug(f"No binding for connection {connection_id}, nothing to unbind")
            return None
        if self._user_to_connection.get(user_id) == connection_id:
            del self._user_to_connection[user_id]
        logger.debug(f"Unbound user {user_id} from connection {connection_id}")
        return user_id

    def __len__(self) -> int:
        return len(self._user_to_connection)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._user_to_connection


class RoomDirectory:
    """Room id -> set of member user ids. Empty rooms are never kept."""

    def __init__(self):
        self._rooms: Dict[str, Set[str]] = {}

    def join(self, room_id: str, user_id: str):
        members = self._rooms.setdefault(room_id, set())
        if user_id in members:
            logger.debug(f"User {user_id} already in room {room_id}")
            return
        members.add(user_id)
        logger.debug(f"User {user_id} added to room {room_id} ({len(members)} members)")

    def members(self, room_id: str) -> List[str]:
        return list(self._rooms.get(room_id, ()))

    def members_excluding(self, room_id: str, user_id: str) -> List[str]:
        return [member for member in self._rooms.get(room_id, ()) if member != user_id]

    def leave(self, room_id: str, user_id: str) -> bool:
        members = self._rooms.get(room_id)
        if not members or user_id not in members:
            return False
        members.discard(user_id)
        logger.info(f"User {user_id} left room {room_id}")
        if not members:
            del self._rooms[room_id]
            logger.info(f"Room {room_id} is now empty and removed")
        else:
            logger.debug(f"Users remaining in room {room_id}: {sorted(members)}")
        return True

    def leave_all(self, user_id: str) -> List[str]:
        """Remove `user_id` from every room; returns the rooms it was removed from."""
        affected = [room_id for room_id, members in self._rooms.items() if user_id in members]
        for room_id in affected:
            self.leave(room_id, user_id)
        return affected

    def rooms(self) -> List[str]:
        return list(self._rooms)

    def rooms_of(self, user_id: str) -> List[str]:
        return [room_id for room_id, members in self._rooms.items() if user_id in members]

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

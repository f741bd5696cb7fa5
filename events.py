# Inbound (client -> relay)
JOIN_ROOM = "join-room"
SIGNAL = "signal"

# Outbound (relay -> client)
EXISTING_USERS = "existing-users"  # unicast to the joiner: {"users": [userId, ...]}
USER_JOINED = "user-joined"  # room minus joiner: {"userId": ...}
USER_LEFT = "user-left"  # remaining members: {"userId": ...}
SIGNAL_ERROR = "signal-error"  # back to sender when the target is unknown (opt-in)
ERROR = "error"  # malformed inbound frame: {"message": ..., "details": [...]}

# **Example frames**
# - `{"event": "join-room", "data": {"roomId": "r1", "userId": "alice"}}`
# - `{"event": "join-room", "data": ["r1", "alice"]}`
# - `{"event": "signal", "data": {"type": "offer", "sdp": {...}, "senderUserId": "alice", "targetUserId": "bob", "roomId": "r1"}}`

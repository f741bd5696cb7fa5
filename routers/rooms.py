from typing import List

from fastapi import APIRouter, HTTPException, Request

from logging_config import get_logger
from schemas.rooms import RoomDetailsResponse, RoomSummary

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("", response_model=List[RoomSummary])
async def list_rooms(request: Request):
    snapshot = request.app.state.signaling.snapshot()
    logger.debug(f"Room listing requested: {len(snapshot)} rooms")
    return [RoomSummary(room_id=room_id, member_count=len(members)) for room_id, members in snapshot.items()]


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Current membership of a room.

    Returns:
    - room_id: Room identifier
    - members: User ids currently in the room
    - member_count: Number of members
    """
    members = request.app.state.signaling.snapshot().get(room_id)
    if members is None:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    return RoomDetailsResponse(room_id=room_id, members=members, member_count=len(members))

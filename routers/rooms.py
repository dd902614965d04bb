from fastapi import APIRouter, HTTPException, Request

from backend import RoomStoreError, generate_room_id
from schemas.rooms import CreateRoomResponse, RoomExistsResponse
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/api/rooms", tags=["rooms"])

MAX_CREATE_ATTEMPTS = 5


@rooms_router.post("", status_code=201, response_model=CreateRoomResponse)
async def create_room(request: Request):
    # Response 201: { "roomId": "k3x9a0b" }
    # The relay never calls this; the UI creates a room, then opens /ws?roomId=...
    store = request.app.state.room_store
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Room creation request from {client_host}")

    try:
        for _ in range(MAX_CREATE_ATTEMPTS):
            room_id = generate_room_id()
            if await store.create_room(room_id):
                logger.info(f"Room created: {room_id}")
                return CreateRoomResponse(room_id=room_id)
            logger.debug(f"Room id collision on {room_id}, retrying")
    except RoomStoreError as e:
        logger.error(f"Error creating room: {e}")
        raise HTTPException(status_code=503, detail="Room store not available")

    logger.error(f"Could not find a free room id after {MAX_CREATE_ATTEMPTS} attempts")
    raise HTTPException(status_code=500, detail="Failed to create room")


@rooms_router.get("/{room_id}", response_model=RoomExistsResponse)
async def validate_room(room_id: str, request: Request):
    # Response 200: { "roomId": "...", "exists": true } | 404
    store = request.app.state.room_store
    try:
        exists = await store.room_exists(room_id)
    except RoomStoreError as e:
        logger.error(f"Error validating room {room_id}: {e}")
        raise HTTPException(status_code=503, detail="Room store not available")

    if not exists:
        logger.info(f"Room not found: {room_id}")
        raise HTTPException(status_code=404, detail="Room not found")

    logger.info(f"Room validated: {room_id}")
    return RoomExistsResponse(room_id=room_id, exists=True)

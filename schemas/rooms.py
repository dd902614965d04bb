from pydantic import BaseModel, ConfigDict, Field


class CreateRoomResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")

class RoomExistsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")
    exists: bool = True

class HealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    message: str
    broker_connected: bool = Field(alias="brokerConnected")
    active_rooms_on_instance: int = Field(alias="activeRoomsOnInstance")
    web_socket_clients: int = Field(alias="webSocketClients")
    instance_queue: str = Field(alias="instanceQueue")

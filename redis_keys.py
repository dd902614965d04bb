ROOM_ROUTING_KEY = "room.{slug}" # room id - topic routing key
EXCHANGE_CHANNEL = "{exchange}:{routing_key}" # pub/sub channel carrying one routing key
INSTANCE_QUEUE_NAME = "chat_instance_queue_{suffix}" # unique per process start
REDIS_ROOM_KEY = "room:{slug}" # room id - existence marker for the room service


def room_routing_key(room_id: str) -> str:
    return ROOM_ROUTING_KEY.format(slug=room_id)


# **Routing**
# - Every chat event for a room is published with routing key `room.{roomId}`.
# - On Redis the exchange is a channel namespace: `chat_exchange:room.{roomId}`.
# - Each instance holds one pub/sub connection named `chat_instance_queue_{suffix}`
#   and subscribes it to the channels of the rooms that have local members.

# **Room service**
# - `room:{roomId}` = "active" while the room id is valid.

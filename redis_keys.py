REDIS_MESSAGES_KEY = "room:messages:{slug}" # room key - hash of message id -> message json
REDIS_TIMELINE_KEY = "room:timeline:{slug}" # room key - zset of message id scored by sequence
REDIS_EXPIRY_KEY = "room:expiry:{slug}" # room key - zset of message id scored by expiry (epoch micros)
REDIS_SEQUENCE_KEY = "room:sequence:{slug}" # room key - hash with last sequence and last created_at
REDIS_PRESENCE_KEY = "room:presence:{slug}" # room key - hash of participant id -> presence json
REDIS_LEASE_KEY = "room:lease:{slug}" # room key - zset of participant id scored by lease expiry
REDIS_ROOM_CHANNEL = "room:channel:{slug}" # room key - pub/sub channel name
REDIS_GUEST_QUOTA_KEY = "guest:quota:{guest_id}" # guest id - lifetime sent counter

# **Room keys**
# - `{slug}` is the string form of the room key: `{topic_id}/{category}/{channel}`,
#   e.g. `room:messages:FR/study/general`.
# - Message keys get a TTL equal to the message lifetime, refreshed on every append.
# - The sequence hash never expires so message ids are never reused for a room.

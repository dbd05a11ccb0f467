"""Real-time chat engine.

Provides:
    - ConnectionRegistry / MultiplicityTracker: live connections per identity.
    - RoomRouter: group room and pair-derived private rooms.
    - MessageRelay: validation, persistence and delivery of messages.
    - compute_snapshot: deduplicated presence snapshots.
    - SignalingRelay: opaque call-setup forwarding.
    - ChatManager: the reactor tying them together.
"""

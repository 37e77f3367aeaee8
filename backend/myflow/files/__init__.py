"""Room-scoped file storage.

Services:
    - FileStorageService: writes uploads under uploads/{room_id}/ and removes
      them when their message is hard-deleted, expires, or the room dies.
"""

# backend/services/user_directory.py

from __future__ import annotations

import json
import logging
import os
import uuid
from typing import Dict, Optional

from models.models import User

logger = logging.getLogger(__name__)


class UserDirectory:
    """
    Read side of the users collaborator.

    Accounts are owned by the auth service; this directory only resolves ids
    to `{id, name, email}`. When `users_file` is set it is loaded at startup:

        [{"id": "u1", "name": "Ada", "email": "ada@example.com"}, ...]
    """

    def __init__(self, users_file: str = "") -> None:
        self.users_file = users_file
        self.users: Dict[str, User] = {}
        if users_file:
            self.load_users()

    def load_users(self) -> None:
        if not os.path.exists(self.users_file):
            logger.warning("Users file %s not found - starting with no users", self.users_file)
            return
        with open(self.users_file, "r") as f:
            data = json.load(f)
        self.users = {u["id"]: User(**u) for u in data}
        logger.info("✓ Loaded %d users from %s", len(self.users), self.users_file)

    def add_user(self, name: str, email: str, user_id: Optional[str] = None) -> User:
        user = User(id=user_id or uuid.uuid4().hex, name=name, email=email)
        self.users[user.id] = user
        return user

    async def find_by_id(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

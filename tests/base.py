import asyncio
import threading

from dataclasses import dataclass


@dataclass(frozen=True)
class User:
    id: str
    name: str


class UserNotFound(Exception):
    pass


class FetchFailed(Exception):
    pass


class UserFetcher:
    """Fetches users by their ids and records every call

    Ids starting with "E" fail individually, a batch with an id starting
    with "F" fails completely.
    """

    def __init__(self):
        self.fetches = []
        self._lock = threading.Lock()

    @property
    def sizes(self):
        with self._lock:
            return [len(keys) for keys in self.fetches]

    def __call__(self, keys):
        with self._lock:
            self.fetches.append(list(keys))

        users = [None] * len(keys)
        errors = [None] * len(keys)
        for i, key in enumerate(keys):
            if key.startswith("F"):
                return None, [FetchFailed("failed all fetches")]
            if key.startswith("E"):
                errors[i] = UserNotFound("user not found")
            else:
                users[i] = User(key, "user " + key)
        return users, errors

    async def fetch_async(self, keys):
        await asyncio.sleep(0)
        return self(keys)


def user(ident):
    return User(ident, "user " + ident)

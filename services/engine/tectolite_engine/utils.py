from __future__ import annotations

import hashlib
import itertools
import json
import uuid
from typing import Any, Callable

IdGenerator = Callable[[], str]


def sha256_bytes(value: bytes) -> str:
    return hashlib.sha256(value).hexdigest()


def stable_json_dumps(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def stable_hash(payload: Any) -> str:
    return sha256_bytes(stable_json_dumps(payload).encode("utf-8"))


def uuid_ids() -> IdGenerator:
    return lambda: uuid.uuid4().hex[:12]


class CounterIds:
    def __init__(self, prefix: str = "id") -> None:
        self.prefix = prefix
        self._counter = itertools.count(1)

    def __call__(self) -> str:
        return f"{self.prefix}-{next(self._counter)}"

"""Data types for the key-value store."""

from __future__ import annotations

import uuid

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..exceptions import ErrorKind
from .encoding import KvKey


VERSIONSTAMP_WIDTH = 20


def format_versionstamp(counter: int) -> str:
    """Render a version counter as a zero-padded 20-digit versionstamp."""
    return str(counter).zfill(VERSIONSTAMP_WIDTH)


@dataclass(frozen=True)
class KvEntry:
    """A stored entry, or the absence of one.

    Attributes
    ----------
    key : tuple
        The entry key.
    value : Any
        Stored value, ``None`` when the entry does not exist.
    versionstamp : str or None
        Version of the last write, ``None`` when the entry does not exist.
    expire_at : float or None
        Absolute expiry (epoch seconds), if any.
    """

    key: KvKey
    value: Any = None
    versionstamp: str | None = None
    expire_at: float | None = None

    @property
    def exists(self) -> bool:
        """Whether the entry holds a value."""
        return self.versionstamp is not None


@dataclass(frozen=True)
class CommitResult:
    """Successful commit."""

    versionstamp: str
    ok: bool = True


@dataclass(frozen=True)
class CommitFailure:
    """Commit rejected because a check did not match. Nothing was applied."""

    ok: bool = False
    kind: ErrorKind = ErrorKind.COMMIT_CONFLICT


@dataclass(frozen=True)
class AtomicCheck:
    """Expected versionstamp of a key (``None`` means the key must not exist)."""

    key: KvKey
    versionstamp: str | None


class MutationType(str, Enum):
    """Kinds of mutation an atomic operation can carry."""

    SET = "set"
    DELETE = "delete"
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    ENQUEUE = "enqueue"


@dataclass(frozen=True)
class Mutation:
    """A single write inside an atomic operation.

    ``key`` is ``None`` only for ``ENQUEUE``.
    """

    type: MutationType
    key: KvKey | None = None
    value: Any = None
    expire_in: float | None = None
    delay: float | None = None
    keys_if_undelivered: tuple[KvKey, ...] = ()


@dataclass
class QueueMessage:
    """A queued value awaiting delivery.

    Attributes
    ----------
    value : Any
        The enqueued payload.
    ready_at : float
        Epoch seconds after which the message may be delivered.
    attempts : int
        Failed delivery attempts so far.
    keys_if_undelivered : list
        Keys that receive the value when delivery is abandoned.
    message_id : str
        Unique message identifier.
    """

    value: Any
    ready_at: float
    attempts: int = 0
    keys_if_undelivered: list[KvKey] = field(default_factory=list)
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)

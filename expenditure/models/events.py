"""
Change Notification Models.

A subscription handler receives either a :class:`ChangeEvent` describing
one committed row change, or a :class:`SubscriptionErrorEvent` when a
notification could not be decoded or the stream was lost for good.
"""

from __future__ import annotations

from datetime import datetime
from typing import Generic, Optional, TypeVar, Union

from pydantic import BaseModel

from expenditure.models.enums import ChangeKind

RecordT = TypeVar("RecordT", bound=BaseModel)


class ChangeEvent(BaseModel, Generic[RecordT]):
    """A row was inserted, updated or deleted in a collection.

    ``record`` is the new state for inserted/updated events and the prior
    state for deleted events.  Unless the table uses ``REPLICA IDENTITY
    FULL`` the prior state of a delete only carries the primary key, in
    which case the record is built without validation.
    """

    kind: ChangeKind
    collection: str
    record: RecordT
    commit_timestamp: Optional[datetime] = None

    model_config = {"frozen": True}

    @property
    def record_id(self) -> str:
        return str(getattr(self.record, "id"))


class SubscriptionErrorEvent(BaseModel):
    """Distinguished event delivered when a stream misbehaves.

    ``fatal`` is ``True`` when the stream is lost for good (it could not
    be opened or the reconnect budget ran out) and the subscription is
    closed.  A single undecodable notification is reported with
    ``fatal=False``; the stream keeps delivering.
    """

    collection: str
    message: str
    attempts: int = 0
    fatal: bool = True

    model_config = {"frozen": True}


StreamEvent = Union[ChangeEvent, SubscriptionErrorEvent]

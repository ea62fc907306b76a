"""Append-only note trail attached to rental orders.

Notes are never edited or deleted; there is no update or delete operation.
Listing is ordered by creation time, then by id, so two notes written in
the same instant still come back in insertion order.
"""

import uuid
from collections import defaultdict
from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .domain import SYSTEM_AUTHOR, Actor, Note, OrderStatus
from .errors import InvalidNote, OrderNotFound
from .models import NoteModel, OrderModel, utcnow
from .snapshots import to_note

MAX_NOTE_LENGTH = 4000


class AuditTrail:
    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self._session = session
        self._clock = clock

    def add_note(
        self,
        order_id: uuid.UUID,
        author_id: str,
        content: str,
        is_system: bool = False,
    ) -> Note:
        """Append a note to an order.

        Args:
            order_id: Order the note belongs to.
            author_id: Operator id, or ``SYSTEM_AUTHOR`` for generated notes.
            content: Free text; surrounding whitespace is stripped.
            is_system: True for notes generated by a transition.

        Returns:
            Note: The stored note.

        Raises:
            InvalidNote: If the content is empty or too long.
            OrderNotFound: If the order does not exist.
        """
        text_ = (content or "").strip()
        if not text_:
            raise InvalidNote("note content is empty")
        if len(text_) > MAX_NOTE_LENGTH:
            raise InvalidNote(f"note longer than {MAX_NOTE_LENGTH} characters")
        if self._session.get(OrderModel, order_id) is None:
            raise OrderNotFound(f"order {order_id} not found")

        row = NoteModel(
            order_id=order_id,
            author_id=author_id,
            content=text_,
            is_system=is_system,
            created_at=self._clock(),
        )
        self._session.add(row)
        self._session.flush()
        return to_note(row)

    def record_transition(
        self,
        order_id: uuid.UUID,
        actor: Actor,
        old: Optional[OrderStatus],
        new: OrderStatus,
    ) -> Note:
        """Append the system note describing one status transition."""
        if old is None:
            content = f"order created as {new.value} by {actor.operator_id}"
        else:
            content = f"{old.value} -> {new.value} by {actor.operator_id}"
        return self.add_note(order_id, SYSTEM_AUTHOR, content, is_system=True)

    def list_notes(self, order_id: uuid.UUID) -> list[Note]:
        rows = self._session.execute(
            select(NoteModel)
            .where(NoteModel.order_id == order_id)
            .order_by(NoteModel.created_at, NoteModel.id)
        ).scalars().all()
        return [to_note(r) for r in rows]

    def notes_for(self, order_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, list[Note]]:
        """Load the notes of several orders with one query."""
        ids = list(order_ids)
        grouped: dict[uuid.UUID, list[Note]] = defaultdict(list)
        if not ids:
            return grouped
        rows = self._session.execute(
            select(NoteModel)
            .where(NoteModel.order_id.in_(ids))
            .order_by(NoteModel.created_at, NoteModel.id)
        ).scalars().all()
        for r in rows:
            grouped[r.order_id].append(to_note(r))
        return grouped

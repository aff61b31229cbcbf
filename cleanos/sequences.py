"""Monotonic human-facing counters (quote numbers)"""

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import Sequence

QUOTE_NUMBER_KEY = "quote_number"
QUOTE_NUMBER_START = 989


def next_value(db: Session, key: str, start: int = 1) -> int:
    """
    Return the counter's current value and advance it by one.

    The row is locked for the read-and-increment, so concurrent callers never
    receive the same number. The caller's transaction commits the increment.
    """
    sequence = db.query(Sequence).filter(Sequence.key == key).with_for_update().first()
    if sequence is None:
        sequence = Sequence(key=key, next_value=start)
        db.add(sequence)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            sequence = db.query(Sequence).filter(Sequence.key == key).with_for_update().one()

    value = sequence.next_value
    sequence.next_value = value + 1
    db.flush()
    return value


def next_quote_number(db: Session) -> int:
    return next_value(db, QUOTE_NUMBER_KEY, start=QUOTE_NUMBER_START)

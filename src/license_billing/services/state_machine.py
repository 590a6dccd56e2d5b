"""
Table-driven status machine shared by licenses, billing cycles,
adjustments and payment transactions

Each entity declares its status enum and a transition table
(current status -> set of permitted next statuses). Every status write
goes through ``apply_transition``, which validates against the table and
relies on the row's version column to detect concurrent writers. On a
version conflict the session is rolled back, the row reloaded and the
transition validated again against the fresh status.
"""
import enum
import logging
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Type, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..config import config
from ..exceptions import IllegalTransitionError, InvalidValueError, PersistenceError

logger = logging.getLogger(__name__)

StatusLike = Union[str, enum.Enum]


class StatusMachine:
    """Allowed-transition graph for one status enum"""

    def __init__(
        self,
        name: str,
        status_enum: Type[enum.Enum],
        transitions: Dict[enum.Enum, Iterable[enum.Enum]],
    ):
        self.name = name
        self.status_enum = status_enum
        self._table: Dict[str, FrozenSet[str]] = {
            member.value: frozenset() for member in status_enum
        }
        for current, targets in transitions.items():
            self._table[self.coerce(current)] = frozenset(self.coerce(t) for t in targets)

    def coerce(self, status: StatusLike) -> str:
        """Normalise an enum member or raw string to the stored value"""
        value = status.value if isinstance(status, enum.Enum) else status
        if not isinstance(value, str):
            raise InvalidValueError(f"Invalid {self.name} status: {status!r}")
        value = value.strip().upper()
        try:
            return self.status_enum(value).value
        except ValueError:
            allowed = ", ".join(m.value for m in self.status_enum)
            raise InvalidValueError(
                f"Invalid {self.name} status '{status}'. Allowed: {allowed}",
                {"field": "status"},
            )

    def allowed_from(self, current: StatusLike) -> FrozenSet[str]:
        return self._table[self.coerce(current)]

    def can_transition(self, current: StatusLike, target: StatusLike) -> bool:
        return self.coerce(target) in self.allowed_from(current)

    def is_terminal(self, status: StatusLike) -> bool:
        return not self.allowed_from(status)

    def assert_transition(self, current: StatusLike, target: StatusLike) -> str:
        """Return the normalised target or raise IllegalTransitionError"""
        current_value = self.coerce(current)
        target_value = self.coerce(target)
        if target_value not in self._table[current_value]:
            allowed = sorted(self._table[current_value])
            hint = f" Allowed: {', '.join(allowed)}" if allowed else f" {current_value} is terminal."
            raise IllegalTransitionError(
                f"Cannot move {self.name} from {current_value} to {target_value}.{hint}",
                current=current_value,
                target=target_value,
            )
        return target_value

    def with_transitions(self, extra: Dict[enum.Enum, Iterable[enum.Enum]]) -> "StatusMachine":
        """Copy of this machine with additional edges"""
        merged: Dict[enum.Enum, set] = {
            self.status_enum(current): {self.status_enum(t) for t in targets}
            for current, targets in self._table.items()
        }
        for current, targets in extra.items():
            merged.setdefault(self.status_enum(self.coerce(current)), set()).update(
                self.status_enum(self.coerce(t)) for t in targets
            )
        return StatusMachine(self.name, self.status_enum, merged)


def apply_transition(
    db: Session,
    entity,
    machine: StatusMachine,
    target: StatusLike,
    status_attr: str = "status",
    guard: Optional[Callable[[object], None]] = None,
    mutate: Optional[Callable[[object], None]] = None,
    max_retries: Optional[int] = None,
):
    """
    Validate and persist a status change with compare-and-swap semantics

    Args:
        db: Session owning ``entity``
        entity: Mapped row with a ``version_id_col``
        machine: Transition table for the row's status column
        target: Requested status
        status_attr: Name of the status column
        guard: Extra precondition, called with the freshly loaded row; raises to reject
        mutate: Side effects applied together with the status write (timestamps etc.)
        max_retries: Attempts on version conflict (defaults to TRANSITION_MAX_RETRIES)

    Returns:
        The refreshed entity
    """
    attempts = max_retries or config.TRANSITION_MAX_RETRIES
    target_value = machine.coerce(target)

    for attempt in range(1, attempts + 1):
        current = getattr(entity, status_attr)
        machine.assert_transition(current, target_value)
        if guard:
            guard(entity)

        setattr(entity, status_attr, target_value)
        if mutate:
            mutate(entity)

        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            logger.warning(
                f"{machine.name} {getattr(entity, 'id', '?')}: version conflict moving to "
                f"{target_value} (attempt {attempt}/{attempts}), reloading"
            )
            db.refresh(entity)
            continue
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to persist {machine.name} transition: {e}", exc_info=True)
            raise PersistenceError(f"Failed to persist {machine.name} status change") from e

        db.refresh(entity)
        logger.info(f"{machine.name} {entity.id}: {current} -> {target_value}")
        return entity

    raise PersistenceError(
        f"{machine.name} {getattr(entity, 'id', '?')} kept changing concurrently; "
        f"gave up after {attempts} attempts",
        {"target_status": target_value},
    )


def commit_or_raise(db: Session, entity, action: str):
    """Commit a plain (non-transition) write and refresh, mapping store failures"""
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise PersistenceError(f"Concurrent modification while trying to {action}") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to {action}: {e}", exc_info=True)
        raise PersistenceError(f"Failed to {action}") from e
    db.refresh(entity)
    return entity

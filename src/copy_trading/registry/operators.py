"""Registry of strategy operators whose trades are copied."""

from __future__ import annotations

from sqlalchemy import select

from copy_trading.db.engine import Database
from copy_trading.db.models import OperatorRow, as_utc, new_id
from copy_trading.errors import InvalidOperator, InvalidParameters
from copy_trading.types import Operator
from copy_trading.utils.logging import get_logger


class OperatorRegistry:
    """Known operators and their active flag."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._logger = get_logger("copy_trading.registry.operators")

    def register(self, name: str, operator_id: str | None = None) -> Operator:
        name = name.strip()
        if not name or len(name) > 100:
            raise InvalidParameters("operator_name_must_be_1_to_100_chars")
        with self._db.session() as session:
            if operator_id is not None and session.get(OperatorRow, operator_id) is not None:
                raise InvalidParameters(f"operator_already_registered: {operator_id}")
            row = OperatorRow(id=operator_id or new_id(), name=name, active=True)
            session.add(row)
            session.flush()
            operator = _to_operator(row)
        self._logger.info("operator_registered", operator_id=operator.id, name=operator.name)
        return operator

    def get(self, operator_id: str) -> Operator | None:
        with self._db.session() as session:
            row = session.get(OperatorRow, operator_id)
            return _to_operator(row) if row is not None else None

    def require_active(self, operator_id: str) -> Operator:
        """Return the operator or raise ``InvalidOperator`` if unknown/inactive."""
        operator = self.get(operator_id)
        if operator is None:
            raise InvalidOperator(f"unknown_operator: {operator_id}")
        if not operator.active:
            raise InvalidOperator(f"inactive_operator: {operator_id}")
        return operator

    def deactivate(self, operator_id: str) -> Operator:
        with self._db.session() as session:
            row = session.get(OperatorRow, operator_id)
            if row is None:
                raise InvalidOperator(f"unknown_operator: {operator_id}")
            row.active = False
            session.flush()
            operator = _to_operator(row)
        self._logger.info("operator_deactivated", operator_id=operator_id)
        return operator

    def list_operators(self, *, active_only: bool = False) -> list[Operator]:
        stmt = select(OperatorRow).order_by(OperatorRow.created_at)
        if active_only:
            stmt = stmt.where(OperatorRow.active.is_(True))
        with self._db.session() as session:
            return [_to_operator(row) for row in session.scalars(stmt)]


def _to_operator(row: OperatorRow) -> Operator:
    return Operator(
        id=row.id,
        name=row.name,
        active=row.active,
        created_at=as_utc(row.created_at),  # type: ignore[arg-type]
    )

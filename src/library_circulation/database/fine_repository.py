"""Fine repository."""

from decimal import Decimal

from sqlalchemy import func, select

from ..models.fine import Fine
from .repository import BaseRepository
from .schema import Fine as FineRow
from .schema import FineStatusEnum, FineTypeEnum
from .session import safe_query

OPEN_FINE = (FineStatusEnum.PENDING, FineStatusEnum.PARTIALLY_PAID)


class FineRepository(BaseRepository[FineRow, Fine]):
    @property
    def model_class(self) -> type[FineRow]:
        return FineRow

    @property
    def response_schema(self) -> type[Fine]:
        return Fine

    def overdue_fine_for_loan(self, loan_id: str) -> FineRow | None:
        """The single OVERDUE fine of a loan, if one was recorded."""
        rows = self._rows(
            select(FineRow).where(
                FineRow.loan_id == loan_id, FineRow.type == FineTypeEnum.OVERDUE
            ),
            "Failed to look up overdue fine",
        )
        return rows[0] if rows else None

    def for_loan(self, loan_id: str) -> list[FineRow]:
        return self._rows(
            select(FineRow)
            .where(FineRow.loan_id == loan_id)
            .order_by(FineRow.created_at, FineRow.id),
            "Failed to list fines for loan",
        )

    def for_user(
        self,
        user_id: str,
        status: FineStatusEnum | None = None,
        fine_type: FineTypeEnum | None = None,
    ) -> list[FineRow]:
        query = select(FineRow).where(FineRow.user_id == user_id)
        if status is not None:
            query = query.where(FineRow.status == status)
        if fine_type is not None:
            query = query.where(FineRow.type == fine_type)
        return self._rows(
            query.order_by(FineRow.created_at, FineRow.id), "Failed to list fines for user"
        )

    def outstanding_total(self, user_id: str) -> Decimal:
        """Sum of unpaid amounts across the user's open fines."""
        query = select(func.coalesce(func.sum(FineRow.amount - FineRow.amount_paid), 0)).where(
            FineRow.user_id == user_id, FineRow.status.in_(OPEN_FINE)
        )
        total = safe_query(
            self.session, lambda s: s.execute(query).scalar(), "Failed to total outstanding fines"
        )
        return Decimal(str(total or 0)).quantize(Decimal("0.01"))

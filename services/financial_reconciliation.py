"""
Financial Reconciliation Service
Records and tracks funds-moving calls whose outcome disagrees with the local record.

A case is opened when, for example, a transfer succeeded on-chain but the
database write marking the payment COMPLETED failed. Cases are written in
their own session so they survive the rollback of the failed transaction,
and they are never resolved automatically.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from database import SessionFactory, managed_session
from models import ReconciliationCase, ReconciliationStatus
from utils.atomic_transactions import locked_row
from utils.datetime_helpers import Clock, get_naive_utc_now
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationSummary:
    open_cases: int
    oldest_open_case_id: Optional[str]
    by_operation: Dict[str, int]


class FinancialReconciliationService:
    """Opens, lists and resolves reconciliation cases"""

    def __init__(self, session_factory: Optional[SessionFactory] = None, clock: Clock = get_naive_utc_now):
        self.session_factory = session_factory
        self.clock = clock

    def record_case(
        self,
        subject_type: str,
        subject_id: str,
        operation: str,
        error: str,
        external_reference: Optional[str] = None,
        amount: Optional[Decimal] = None,
        token: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        case_id = f"REC_{uuid.uuid4().hex[:16].upper()}"
        # Logged before the write so the context survives even if the database is down
        logger.critical(
            f"RECONCILIATION REQUIRED {case_id}: {subject_type} {subject_id} operation={operation} "
            f"reference={external_reference} amount={amount} {token or ''} error={error} context={context}"
        )
        with managed_session(self.session_factory) as session:
            session.add(
                ReconciliationCase(
                    case_id=case_id,
                    subject_type=subject_type,
                    subject_id=subject_id,
                    operation=operation,
                    external_reference=external_reference,
                    amount=amount,
                    token=token,
                    error=error,
                    context=context or {},
                    status=ReconciliationStatus.OPEN.value,
                    created_at=self.clock(),
                )
            )
        return case_id

    def list_cases(self, status: Optional[str] = ReconciliationStatus.OPEN.value) -> List[ReconciliationCase]:
        with managed_session(self.session_factory) as session:
            query = session.query(ReconciliationCase)
            if status:
                query = query.filter(ReconciliationCase.status == status)
            return query.order_by(ReconciliationCase.created_at, ReconciliationCase.id).all()

    def list_open_cases(self) -> List[ReconciliationCase]:
        return self.list_cases(ReconciliationStatus.OPEN.value)

    def cases_for(self, subject_id: str) -> List[ReconciliationCase]:
        with managed_session(self.session_factory) as session:
            return (
                session.query(ReconciliationCase)
                .filter(ReconciliationCase.subject_id == subject_id)
                .order_by(ReconciliationCase.id)
                .all()
            )

    def resolve_case(self, case_id: str, resolution_note: str) -> ReconciliationCase:
        if not resolution_note or not resolution_note.strip():
            raise ValidationError("A resolution note is required")
        with managed_session(self.session_factory) as session:
            case = locked_row(session, ReconciliationCase, ReconciliationCase.case_id, case_id)
            if case.status == ReconciliationStatus.RESOLVED.value:
                raise ValidationError(f"Case {case_id} is already resolved")
            case.status = ReconciliationStatus.RESOLVED.value
            case.resolution_note = resolution_note.strip()
            case.resolved_at = self.clock()
            session.flush()
        logger.info(f"Reconciliation case {case_id} resolved: {resolution_note}")
        return case

    def summarize(self) -> ReconciliationSummary:
        cases = self.list_open_cases()
        by_operation: Dict[str, int] = {}
        for case in cases:
            by_operation[case.operation] = by_operation.get(case.operation, 0) + 1
        return ReconciliationSummary(
            open_cases=len(cases),
            oldest_open_case_id=cases[0].case_id if cases else None,
            by_operation=by_operation,
        )

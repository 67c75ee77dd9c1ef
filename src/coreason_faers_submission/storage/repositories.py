# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""
Repositories mapping ORM rows to domain models.

Every method takes the caller's ``Session`` so that a status change and its
history row commit in the same transaction. Status columns are only ever moved
through ``compare_and_set_status``.
"""

from collections.abc import Iterable
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from coreason_faers_submission.domain.enums import (
    AttemptStatus,
    BatchCaseStatus,
    BatchStatus,
    CaseStatus,
    ErrorCategory,
    HistoryEvent,
)
from coreason_faers_submission.domain.models import Case
from coreason_faers_submission.domain.submission import (
    Acknowledgment,
    ApiSubmissionAttempt,
    SubmissionBatch,
    SubmissionHistoryEntry,
)
from coreason_faers_submission.exceptions import BatchNotFoundError, CaseNotFoundError
from coreason_faers_submission.storage.schema import (
    ApiSubmissionAttemptRow,
    BatchCaseRow,
    CaseRow,
    DosageRow,
    DrugRow,
    ReactionRow,
    ReporterRow,
    SubmissionBatchRow,
    SubmissionHistoryRow,
    SubstanceRow,
)
from coreason_faers_submission.utils.clock import utc_now

_CHILDREN = {"reporters", "reactions", "drugs"}
_TIMESTAMPS = ("created_at", "updated_at")


def _values(statuses: Iterable[Any]) -> list[str]:
    return [getattr(s, "value", s) for s in statuses]


def _build_drug(data: dict[str, Any]) -> DrugRow:
    substances = data.pop("substances", [])
    dosages = data.pop("dosages", [])
    drug = DrugRow(**data)
    drug.substances = [SubstanceRow(**s) for s in substances]
    drug.dosages = [DosageRow(**d) for d in dosages]
    return drug


def _strip_ids(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    cleaned = []
    for item in items:
        item = {k: v for k, v in item.items() if k != "id"}
        for nested in ("substances", "dosages"):
            if nested in item:
                item[nested] = [{k: v for k, v in n.items() if k != "id"} for n in item[nested]]
        cleaned.append(item)
    return cleaned


class CaseRepository:
    """Persistence for the case aggregate and its clinical sub-records."""

    def add(self, session: Session, case: Case) -> Case:
        data = case.model_dump(exclude=_CHILDREN)
        data["status"] = case.status.value
        for key in _TIMESTAMPS:
            if data.get(key) is None:
                data.pop(key, None)
        row = CaseRow(**data)
        self._attach_children(
            row,
            _strip_ids([r.model_dump() for r in case.reporters]),
            _strip_ids([r.model_dump() for r in case.reactions]),
            _strip_ids([d.model_dump() for d in case.drugs]),
        )
        session.add(row)
        session.flush()
        return Case.model_validate(row)

    @staticmethod
    def _attach_children(
        row: CaseRow,
        reporters: list[dict[str, Any]],
        reactions: list[dict[str, Any]],
        drugs: list[dict[str, Any]],
    ) -> None:
        row.reporters = [ReporterRow(**r) for r in reporters]
        row.reactions = [ReactionRow(**r) for r in reactions]
        row.drugs = [_build_drug(d) for d in drugs]

    def get_row(self, session: Session, case_id: str) -> CaseRow:
        row = session.get(CaseRow, case_id, populate_existing=True)
        if row is None:
            raise CaseNotFoundError(f"Case not found: {case_id}")
        return row

    def get(self, session: Session, case_id: str) -> Case:
        return Case.model_validate(self.get_row(session, case_id))

    def find(self, session: Session, case_id: str) -> Optional[Case]:
        row = session.get(CaseRow, case_id, populate_existing=True)
        return Case.model_validate(row) if row is not None else None

    def exists(self, session: Session, case_id: str) -> bool:
        return session.scalar(select(func.count()).where(CaseRow.id == case_id)) == 1

    def list_by_status(self, session: Session, *statuses: CaseStatus) -> list[Case]:
        rows = session.scalars(
            select(CaseRow).where(CaseRow.status.in_(_values(statuses))).order_by(CaseRow.created_at, CaseRow.id)
        )
        return [Case.model_validate(row) for row in rows]

    def compare_and_set_status(
        self,
        session: Session,
        case_id: str,
        expected: Iterable[CaseStatus],
        target: CaseStatus,
        **fields: Any,
    ) -> bool:
        """
        Move ``case_id`` to ``target`` only if its current status is one of ``expected``.

        Extra keyword arguments are written in the same UPDATE statement.

        Returns:
            True when exactly one row changed.
        """
        stmt = (
            update(CaseRow)
            .where(CaseRow.id == case_id, CaseRow.status.in_(_values(expected)))
            .values(status=target.value, updated_at=utc_now(), **fields)
        )
        result = session.execute(stmt)
        return result.rowcount == 1

    def update_if_not_nullified(
        self, session: Session, case_id: str, expected: Iterable[CaseStatus], **fields: Any
    ) -> bool:
        """
        Write ``fields`` only while ``case_id`` is not nullified and its status is one of ``expected``.

        With no fields this just touches ``updated_at``, which still takes the row
        lock that orders concurrent versioning of the same case.
        """
        stmt = (
            update(CaseRow)
            .where(
                CaseRow.id == case_id,
                CaseRow.is_nullified.is_not(True),
                CaseRow.status.in_(_values(expected)),
            )
            .values(updated_at=utc_now(), **fields)
        )
        return session.execute(stmt).rowcount == 1

    def update_fields(self, session: Session, case_id: str, **fields: Any) -> None:
        session.execute(update(CaseRow).where(CaseRow.id == case_id).values(updated_at=utc_now(), **fields))

    def duplicate(self, session: Session, source_id: str, new_id: str, **overrides: Any) -> Case:
        """Copy a case with all sub-records under ``new_id``, applying ``overrides`` to the copy."""
        source = self.get(session, source_id)
        data = source.model_dump(exclude=_CHILDREN | set(_TIMESTAMPS))
        data.update(overrides)
        data["id"] = new_id
        status = data.get("status", CaseStatus.DRAFT)
        data["status"] = getattr(status, "value", status)
        row = CaseRow(**data)
        self._attach_children(
            row,
            _strip_ids([r.model_dump() for r in source.reporters]),
            _strip_ids([r.model_dump() for r in source.reactions]),
            _strip_ids([d.model_dump() for d in source.drugs]),
        )
        session.add(row)
        session.flush()
        return Case.model_validate(row)

    def root_id(self, session: Session, case_id: str) -> str:
        """Follow ``parent_case_id`` up to the root of the version chain."""
        seen = {case_id}
        current = self.get_row(session, case_id)
        while current.parent_case_id is not None:
            if current.parent_case_id in seen:
                raise ValueError(f"Cycle in version chain at case {current.parent_case_id}")
            seen.add(current.parent_case_id)
            current = self.get_row(session, current.parent_case_id)
        return current.id

    def chain_rows(self, session: Session, case_id: str) -> list[CaseRow]:
        """All versions transitively descending from the root of ``case_id``'s chain, ordered by version."""
        root = self.root_id(session, case_id)
        members = {root}
        frontier = [root]
        while frontier:
            children = session.scalars(select(CaseRow.id).where(CaseRow.parent_case_id.in_(frontier))).all()
            frontier = [c for c in children if c not in members]
            members.update(frontier)
        rows = session.scalars(select(CaseRow).where(CaseRow.id.in_(members))).all()
        return sorted(rows, key=lambda r: (r.version, r.id))

    def max_chain_version(self, session: Session, case_id: str) -> int:
        return max(row.version for row in self.chain_rows(session, case_id))


class HistoryRepository:
    """Append-only audit log."""

    def append(
        self,
        session: Session,
        event: HistoryEvent,
        case_id: Optional[str] = None,
        batch_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> None:
        session.add(
            SubmissionHistoryRow(
                case_id=case_id,
                batch_id=batch_id,
                event_type=event.value,
                details=details or {},
                notes=notes,
                created_at=utc_now(),
            )
        )

    def list_for_case(self, session: Session, case_id: str) -> list[SubmissionHistoryEntry]:
        rows = session.scalars(
            select(SubmissionHistoryRow)
            .where(SubmissionHistoryRow.case_id == case_id)
            .order_by(SubmissionHistoryRow.created_at, SubmissionHistoryRow.id)
        )
        return [SubmissionHistoryEntry.model_validate(row) for row in rows]

    def list_for_batch(self, session: Session, batch_id: int) -> list[SubmissionHistoryEntry]:
        rows = session.scalars(
            select(SubmissionHistoryRow)
            .where(SubmissionHistoryRow.batch_id == batch_id)
            .order_by(SubmissionHistoryRow.created_at, SubmissionHistoryRow.id)
        )
        return [SubmissionHistoryEntry.model_validate(row) for row in rows]

    def count_events(self, session: Session, case_id: str, event: HistoryEvent) -> int:
        return session.scalar(
            select(func.count())
            .select_from(SubmissionHistoryRow)
            .where(SubmissionHistoryRow.case_id == case_id, SubmissionHistoryRow.event_type == event.value)
        )


class AttemptRepository:
    """
    Submission attempt records.

    Rows are inserted ``in_progress`` and closed exactly once; acknowledgment
    fields are written at most once. Nothing here deletes.
    """

    def next_attempt_number(
        self, session: Session, case_id: Optional[str] = None, batch_id: Optional[int] = None
    ) -> int:
        stmt = select(func.max(ApiSubmissionAttemptRow.attempt_number))
        if case_id is not None:
            stmt = stmt.where(ApiSubmissionAttemptRow.case_id == case_id)
        else:
            stmt = stmt.where(ApiSubmissionAttemptRow.case_id.is_(None), ApiSubmissionAttemptRow.batch_id == batch_id)
        return (session.scalar(stmt) or 0) + 1

    def start(
        self,
        session: Session,
        environment: str,
        case_id: Optional[str] = None,
        batch_id: Optional[int] = None,
    ) -> ApiSubmissionAttempt:
        row = ApiSubmissionAttemptRow(
            case_id=case_id,
            batch_id=batch_id,
            attempt_number=self.next_attempt_number(session, case_id=case_id, batch_id=batch_id),
            environment=environment,
            status=AttemptStatus.IN_PROGRESS.value,
            started_at=utc_now(),
        )
        session.add(row)
        session.flush()
        return ApiSubmissionAttempt.model_validate(row)

    def complete(
        self,
        session: Session,
        attempt_id: int,
        status: AttemptStatus,
        esg_submission_id: Optional[str] = None,
        esg_core_id: Optional[str] = None,
        error: Optional[str] = None,
        error_category: Optional[ErrorCategory] = None,
        http_status_code: Optional[int] = None,
    ) -> bool:
        """Close an in-progress attempt; returns False if it was already terminal."""
        if status is AttemptStatus.IN_PROGRESS:
            raise ValueError("An attempt cannot be completed as in_progress")
        stmt = (
            update(ApiSubmissionAttemptRow)
            .where(
                ApiSubmissionAttemptRow.id == attempt_id,
                ApiSubmissionAttemptRow.status == AttemptStatus.IN_PROGRESS.value,
            )
            .values(
                status=status.value,
                esg_submission_id=esg_submission_id,
                esg_core_id=esg_core_id,
                error=error,
                error_category=error_category.value if error_category else None,
                http_status_code=http_status_code,
                completed_at=utc_now(),
            )
        )
        return session.execute(stmt).rowcount == 1

    def fail_in_progress(
        self,
        session: Session,
        error: str,
        error_category: ErrorCategory = ErrorCategory.UNKNOWN,
        case_id: Optional[str] = None,
        batch_id: Optional[int] = None,
    ) -> int:
        """Close every still-open attempt of one case or batch as failed; returns how many were closed."""
        stmt = update(ApiSubmissionAttemptRow).where(
            ApiSubmissionAttemptRow.status == AttemptStatus.IN_PROGRESS.value
        )
        if case_id is not None:
            stmt = stmt.where(ApiSubmissionAttemptRow.case_id == case_id)
        else:
            stmt = stmt.where(ApiSubmissionAttemptRow.case_id.is_(None), ApiSubmissionAttemptRow.batch_id == batch_id)
        stmt = stmt.values(
            status=AttemptStatus.FAILED.value,
            error=error,
            error_category=error_category.value,
            completed_at=utc_now(),
        )
        return session.execute(stmt).rowcount

    def record_ack(self, session: Session, esg_submission_id: str, ack: Acknowledgment) -> bool:
        """Attach an acknowledgment to the successful attempt that produced ``esg_submission_id``."""
        row = session.scalar(
            select(ApiSubmissionAttemptRow)
            .where(
                ApiSubmissionAttemptRow.esg_submission_id == esg_submission_id,
                ApiSubmissionAttemptRow.status == AttemptStatus.SUCCESS.value,
            )
            .order_by(ApiSubmissionAttemptRow.id.desc())
            .limit(1)
        )
        if row is None or row.ack_type is not None:
            return False
        row.ack_type = ack.acknowledgment_type.value
        row.ack_timestamp = ack.timestamp or utc_now()
        row.ack_fda_core_id = ack.fda_core_id
        row.ack_errors = list(ack.errors)
        session.flush()
        return True

    def list_for_case(self, session: Session, case_id: str) -> list[ApiSubmissionAttempt]:
        rows = session.scalars(
            select(ApiSubmissionAttemptRow)
            .where(ApiSubmissionAttemptRow.case_id == case_id)
            .order_by(ApiSubmissionAttemptRow.attempt_number)
        )
        return [ApiSubmissionAttempt.model_validate(row) for row in rows]

    def list_for_batch(self, session: Session, batch_id: int) -> list[ApiSubmissionAttempt]:
        rows = session.scalars(
            select(ApiSubmissionAttemptRow)
            .where(ApiSubmissionAttemptRow.batch_id == batch_id)
            .order_by(ApiSubmissionAttemptRow.attempt_number)
        )
        return [ApiSubmissionAttempt.model_validate(row) for row in rows]


class BatchRepository:
    """Persistence for submission batches and their member rows."""

    def create(
        self, session: Session, batch_number: str, batch_type: str, case_ids: list[str], notes: Optional[str] = None
    ) -> SubmissionBatch:
        row = SubmissionBatchRow(
            batch_number=batch_number,
            batch_type=batch_type,
            status=BatchStatus.CREATED.value,
            case_count=len(case_ids),
            notes=notes,
        )
        row.cases = [BatchCaseRow(case_id=case_id, validation_errors=[]) for case_id in case_ids]
        session.add(row)
        session.flush()
        return SubmissionBatch.model_validate(row)

    def get_row(self, session: Session, batch_id: int) -> SubmissionBatchRow:
        row = session.get(SubmissionBatchRow, batch_id, populate_existing=True)
        if row is None:
            raise BatchNotFoundError(f"Batch not found: {batch_id}")
        return row

    def get(self, session: Session, batch_id: int) -> SubmissionBatch:
        return SubmissionBatch.model_validate(self.get_row(session, batch_id))

    def list_all(
        self, session: Session, status: Optional[BatchStatus] = None, batch_type: Optional[str] = None
    ) -> list[SubmissionBatch]:
        stmt = select(SubmissionBatchRow).order_by(SubmissionBatchRow.created_at.desc(), SubmissionBatchRow.id.desc())
        if status is not None:
            stmt = stmt.where(SubmissionBatchRow.status == status.value)
        if batch_type is not None:
            stmt = stmt.where(SubmissionBatchRow.batch_type == getattr(batch_type, "value", batch_type))
        return [SubmissionBatch.model_validate(row) for row in session.scalars(stmt)]

    def active_batch_for_case(self, session: Session, case_id: str) -> Optional[SubmissionBatch]:
        active = [s.value for s in BatchStatus if s.is_active]
        row = session.scalar(
            select(SubmissionBatchRow)
            .join(BatchCaseRow)
            .where(BatchCaseRow.case_id == case_id, SubmissionBatchRow.status.in_(active))
            .limit(1)
        )
        return SubmissionBatch.model_validate(row) if row is not None else None

    def case_ids(self, session: Session, batch_id: int) -> list[str]:
        return list(
            session.scalars(select(BatchCaseRow.case_id).where(BatchCaseRow.batch_id == batch_id).order_by(BatchCaseRow.id))
        )

    def add_case(self, session: Session, batch_id: int, case_id: str) -> None:
        session.add(BatchCaseRow(batch_id=batch_id, case_id=case_id, validation_errors=[]))
        session.flush()
        self.recount(session, batch_id)

    def remove_case(self, session: Session, batch_id: int, case_id: str) -> bool:
        row = session.scalar(
            select(BatchCaseRow).where(BatchCaseRow.batch_id == batch_id, BatchCaseRow.case_id == case_id)
        )
        if row is None:
            return False
        session.delete(row)
        session.flush()
        self.recount(session, batch_id)
        return True

    def update_case_validation(
        self, session: Session, batch_id: int, case_id: str, status: BatchCaseStatus, errors: list[str]
    ) -> None:
        session.execute(
            update(BatchCaseRow)
            .where(BatchCaseRow.batch_id == batch_id, BatchCaseRow.case_id == case_id)
            .values(validation_status=status.value, validation_errors=errors)
        )

    def recount(self, session: Session, batch_id: int) -> None:
        """Recompute the denormalized member counts from the join rows."""
        counts = dict(
            session.execute(
                select(BatchCaseRow.validation_status, func.count())
                .where(BatchCaseRow.batch_id == batch_id)
                .group_by(BatchCaseRow.validation_status)
            ).all()
        )
        session.execute(
            update(SubmissionBatchRow)
            .where(SubmissionBatchRow.id == batch_id)
            .values(
                case_count=sum(counts.values()),
                valid_case_count=counts.get(BatchCaseStatus.VALID.value, 0),
                invalid_case_count=counts.get(BatchCaseStatus.INVALID.value, 0),
                updated_at=utc_now(),
            )
        )

    def compare_and_set_status(
        self,
        session: Session,
        batch_id: int,
        expected: Iterable[BatchStatus],
        target: BatchStatus,
        **fields: Any,
    ) -> bool:
        stmt = (
            update(SubmissionBatchRow)
            .where(SubmissionBatchRow.id == batch_id, SubmissionBatchRow.status.in_(_values(expected)))
            .values(status=target.value, updated_at=utc_now(), **fields)
        )
        return session.execute(stmt).rowcount == 1

    def update_fields(self, session: Session, batch_id: int, **fields: Any) -> None:
        session.execute(
            update(SubmissionBatchRow).where(SubmissionBatchRow.id == batch_id).values(updated_at=utc_now(), **fields)
        )

    def delete(self, session: Session, batch_id: int) -> None:
        session.delete(self.get_row(session, batch_id))
        session.flush()

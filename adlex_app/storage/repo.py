from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from .models import Check, Organization, User, Violation, utcnow

log = logging.getLogger("adlex")


class PersistenceError(Exception):
    pass


@dataclass
class ViolationRecord:
    id: int
    start_pos: int
    end_pos: int
    reason: str
    dictionary_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CheckRecord:
    id: int
    organization_id: int
    user_id: str
    original_text: str
    status: str
    input_type: str = "text"
    file_name: Optional[str] = None
    modified_text: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    violations: List[ViolationRecord] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "completed_at", "deleted_at"):
            value = data[key]
            data[key] = value.isoformat() if value is not None else None
        return data


@dataclass
class UserRecord:
    id: str
    organization_id: Optional[int]
    role: str = "user"


def _violation_record(v: Violation) -> ViolationRecord:
    return ViolationRecord(
        id=v.id,
        start_pos=v.start_pos,
        end_pos=v.end_pos,
        reason=v.reason,
        dictionary_id=v.dictionary_id,
    )


def _check_record(c: Check, with_violations: bool = False) -> CheckRecord:
    return CheckRecord(
        id=c.id,
        organization_id=c.organization_id,
        user_id=c.user_id,
        original_text=c.original_text,
        status=c.status,
        input_type=c.input_type,
        file_name=c.file_name,
        modified_text=c.modified_text,
        error_message=c.error_message,
        created_at=c.created_at,
        completed_at=c.completed_at,
        deleted_at=c.deleted_at,
        violations=[_violation_record(v) for v in c.violations] if with_violations else [],
    )


class CheckRepo:
    """Check lifecycle persistence.

    ``claim``, ``complete`` and ``fail`` are conditional updates on ``status``
    so concurrent workers cannot both own the same check and terminal rows are
    never rewritten.
    """

    def __init__(self, Session):
        self.Session = Session

    def create(
        self,
        *,
        user_id: str,
        organization_id: int,
        original_text: str,
        input_type: str = "text",
        file_name: Optional[str] = None,
    ) -> CheckRecord:
        try:
            with self.Session() as session:
                with session.begin():
                    check = Check(
                        user_id=user_id,
                        organization_id=organization_id,
                        original_text=original_text,
                        input_type=input_type,
                        file_name=file_name,
                        status="pending",
                    )
                    session.add(check)
                    session.flush()
                    return _check_record(check)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to create check: {exc}") from exc

    def find(self, check_id: int, include_deleted: bool = False) -> Optional[CheckRecord]:
        with self.Session() as session:
            check = session.get(Check, check_id)
            if check is None or (check.deleted_at is not None and not include_deleted):
                return None
            return _check_record(check, with_violations=check.status == "completed")

    def claim(self, check_id: int) -> bool:
        """Move ``pending`` to ``processing``; False when someone else won."""
        with self.Session() as session:
            with session.begin():
                res = session.execute(
                    update(Check)
                    .where(Check.id == check_id, Check.status == "pending", Check.deleted_at.is_(None))
                    .values(status="processing")
                )
                return res.rowcount == 1

    def complete(self, check_id: int, modified_text: str, violations: Iterable) -> CheckRecord:
        """Store violations, mark ``completed`` and bump org usage atomically."""
        try:
            with self.Session() as session:
                with session.begin():
                    res = session.execute(
                        update(Check)
                        .where(Check.id == check_id, Check.status == "processing")
                        .values(status="completed", modified_text=modified_text, completed_at=utcnow())
                    )
                    if res.rowcount != 1:
                        raise PersistenceError(f"check {check_id} is not processing")
                    session.add_all(
                        [
                            Violation(
                                check_id=check_id,
                                start_pos=v.start_pos,
                                end_pos=v.end_pos,
                                reason=v.reason,
                                dictionary_id=v.dictionary_id,
                            )
                            for v in violations
                        ]
                    )
                    org_id = session.execute(
                        select(Check.organization_id).where(Check.id == check_id)
                    ).scalar_one()
                    session.execute(
                        update(Organization)
                        .where(Organization.id == org_id)
                        .values(used_checks=Organization.used_checks + 1)
                    )
                    session.flush()
                    check = session.get(Check, check_id)
                    return _check_record(check, with_violations=True)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to store result for check {check_id}: {exc}") from exc

    def fail(self, check_id: int, message: str) -> bool:
        """Mark a non-terminal check as ``failed``; terminal rows are left alone."""
        with self.Session() as session:
            with session.begin():
                res = session.execute(
                    update(Check)
                    .where(Check.id == check_id, Check.status.in_(("pending", "processing")))
                    .values(status="failed", error_message=message, completed_at=utcnow())
                )
                if res.rowcount != 1:
                    log.info("check %s already terminal, failure not recorded", check_id)
                return res.rowcount == 1

    def unfinished(self) -> List[CheckRecord]:
        """Non-deleted checks still ``pending`` or ``processing``, oldest first."""
        with self.Session() as session:
            rows = session.execute(
                select(Check)
                .where(Check.status.in_(("pending", "processing")), Check.deleted_at.is_(None))
                .order_by(Check.id)
            ).scalars()
            return [_check_record(c) for c in rows]

    def soft_delete(self, check_id: int) -> bool:
        with self.Session() as session:
            with session.begin():
                res = session.execute(
                    update(Check)
                    .where(Check.id == check_id, Check.deleted_at.is_(None))
                    .values(deleted_at=utcnow())
                )
                return res.rowcount == 1

    def list_violations(self, check_id: int) -> List[ViolationRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(Violation).where(Violation.check_id == check_id).order_by(Violation.start_pos)
            ).scalars()
            return [_violation_record(v) for v in rows]


class UserRepo:
    def __init__(self, Session):
        self.Session = Session

    def find(self, user_id: str) -> Optional[UserRecord]:
        with self.Session() as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            return UserRecord(id=user.id, organization_id=user.organization_id, role=user.role)

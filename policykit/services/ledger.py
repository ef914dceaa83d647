"""Caller-side spend ledger.

The ledger answers "how much has this caller spent today and this week" and
keeps an audit trail of every policy decision. Windows are the UTC calendar
day and the ISO week starting Monday.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from policykit import db
from policykit.models.spend import CallStatus, DailySpend, PolicyDecisionRecord, SpendCall
from policykit.schemas.policy import Policy, PolicyDecision, SpendContext
from policykit.utils.ids import generate_id
from policykit.utils.time import day_start, utcnow, week_start

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
_USD_QUANTUM = Decimal("0.000001")


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value or 0)).quantize(_USD_QUANTUM)


@dataclass(frozen=True)
class Reservation:
    """Budget held for a payment in flight."""

    reservation_id: str
    caller_id: str
    amount_usd: Decimal
    spend_date: date
    endpoint: str = ""


@dataclass(frozen=True)
class PaymentRecord:
    payment_id: str
    caller_id: str
    amount_usd: Decimal
    endpoint: str
    nonce: str
    payment_ref: str
    timestamp: datetime


@dataclass(frozen=True)
class DecisionRecord:
    decision_id: str
    caller_id: str
    decision: PolicyDecision
    endpoint: str
    price_usd: Decimal
    timestamp: datetime


class SpendLedger(ABC):
    """Spend history consulted before every payment."""

    @abstractmethod
    def get_spend_context(self, caller_id: str) -> SpendContext:
        ...

    @abstractmethod
    def record_decision(
        self,
        caller_id: str,
        decision: PolicyDecision,
        *,
        endpoint: str,
        price_usd: Decimal,
    ) -> None:
        """Persist the decision for audit, whatever its outcome."""

    @abstractmethod
    def record_payment(
        self,
        caller_id: str,
        amount_usd: Decimal,
        *,
        endpoint: str,
        nonce: str,
        payment_ref: str,
    ) -> None:
        """Count a completed payment in the daily and weekly windows."""

    @abstractmethod
    def reserve(
        self,
        caller_id: str,
        amount_usd: Decimal,
        policy: Policy,
        *,
        endpoint: str = "",
    ) -> Reservation | None:
        """Hold ``amount_usd`` if it fits the caps; ``None`` when it does not."""

    @abstractmethod
    def commit(self, reservation: Reservation, *, nonce: str, payment_ref: str) -> None:
        """Turn a reservation into a recorded payment."""

    @abstractmethod
    def release(self, reservation: Reservation) -> None:
        """Give a reservation back to the budget."""


@dataclass
class _Hold:
    reservation: Reservation
    timestamp: datetime


@dataclass
class _MemoryState:
    payments: list[PaymentRecord] = field(default_factory=list)
    decisions: list[DecisionRecord] = field(default_factory=list)
    holds: dict[str, _Hold] = field(default_factory=dict)


class InMemorySpendLedger(SpendLedger):
    """Process-local ledger for development and tests."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._state = _MemoryState()

    def _context_locked(self, caller_id: str, now: datetime) -> SpendContext:
        today = day_start(now)
        monday = week_start(now)
        daily = weekly = ZERO
        count = 0
        for payment in self._state.payments:
            if payment.caller_id != caller_id:
                continue
            if payment.timestamp >= monday:
                weekly += payment.amount_usd
            if payment.timestamp >= today:
                daily += payment.amount_usd
                count += 1
        for hold in self._state.holds.values():
            if hold.reservation.caller_id != caller_id:
                continue
            if hold.timestamp >= monday:
                weekly += hold.reservation.amount_usd
            if hold.timestamp >= today:
                daily += hold.reservation.amount_usd
        return SpendContext(
            caller_id=caller_id,
            daily_spent_usd=daily,
            weekly_spent_usd=weekly,
            daily_call_count=count,
            as_of=now,
        )

    def get_spend_context(self, caller_id: str) -> SpendContext:
        with self._lock:
            return self._context_locked(caller_id, self._clock())

    def record_decision(self, caller_id, decision, *, endpoint, price_usd) -> None:
        with self._lock:
            self._state.decisions.append(
                DecisionRecord(
                    decision_id=generate_id("dec"),
                    caller_id=caller_id,
                    decision=decision,
                    endpoint=endpoint,
                    price_usd=Decimal(price_usd),
                    timestamp=self._clock(),
                )
            )

    def record_payment(self, caller_id, amount_usd, *, endpoint, nonce, payment_ref) -> None:
        with self._lock:
            self._state.payments.append(
                PaymentRecord(
                    payment_id=generate_id("pay"),
                    caller_id=caller_id,
                    amount_usd=Decimal(amount_usd),
                    endpoint=endpoint,
                    nonce=nonce,
                    payment_ref=payment_ref,
                    timestamp=self._clock(),
                )
            )

    def reserve(self, caller_id, amount_usd, policy, *, endpoint="") -> Reservation | None:
        amount = Decimal(amount_usd)
        with self._lock:
            now = self._clock()
            context = self._context_locked(caller_id, now)
            if context.daily_spent_usd + amount > policy.daily_cap_usd:
                return None
            if policy.weekly_cap_usd is not None and context.weekly_spent_usd + amount > policy.weekly_cap_usd:
                return None
            reservation = Reservation(
                reservation_id=generate_id("call"),
                caller_id=caller_id,
                amount_usd=amount,
                spend_date=day_start(now).date(),
                endpoint=endpoint,
            )
            self._state.holds[reservation.reservation_id] = _Hold(reservation, now)
            return reservation

    def commit(self, reservation, *, nonce, payment_ref) -> None:
        with self._lock:
            if self._state.holds.pop(reservation.reservation_id, None) is None:
                raise KeyError(f"Unknown or settled reservation {reservation.reservation_id}")
            self.record_payment(
                reservation.caller_id,
                reservation.amount_usd,
                endpoint=reservation.endpoint,
                nonce=nonce,
                payment_ref=payment_ref,
            )

    def release(self, reservation) -> None:
        with self._lock:
            self._state.holds.pop(reservation.reservation_id, None)

    def payments(self) -> list[PaymentRecord]:
        with self._lock:
            return list(self._state.payments)

    def decisions(self) -> list[DecisionRecord]:
        with self._lock:
            return list(self._state.decisions)

    def blocked_decisions(self) -> list[DecisionRecord]:
        return [record for record in self.decisions() if not record.decision.allow]

    def clear(self) -> None:
        with self._lock:
            self._state = _MemoryState()


def _transaction(session: Session):
    return session.begin_nested() if session.in_transaction() else session.begin()


class SqlSpendLedger(SpendLedger):
    """Ledger over the ``calls``, ``policy_decisions`` and ``daily_spend`` tables.

    ``daily_spend`` rows are only ever changed with in-database increments so
    concurrent writers never lose updates. Reserved amounts count as spent
    until committed or released.
    """

    def __init__(self, db_session: Session | None = None, clock: Callable[[], datetime] = utcnow) -> None:
        self._db_session = db_session
        self._clock = clock

    def _ensure_day(self, session: Session, caller_id: str, spend_date: date) -> None:
        try:
            with _transaction(session):
                exists = session.execute(
                    select(DailySpend.id).where(
                        DailySpend.caller_id == caller_id,
                        DailySpend.spend_date == spend_date,
                    )
                ).first()
                if exists is None:
                    session.add(DailySpend(caller_id=caller_id, spend_date=spend_date))
        except IntegrityError:
            # Another writer created the row first.
            logger.debug("daily_spend row created concurrently", extra={"caller_id": caller_id})

    def _increment(self, session: Session, caller_id: str, spend_date: date, **deltas: Any) -> int:
        values = {name: getattr(DailySpend, name) + delta for name, delta in deltas.items()}
        result = session.execute(
            update(DailySpend)
            .where(DailySpend.caller_id == caller_id, DailySpend.spend_date == spend_date)
            .values(**values, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def _weekly_total(self, session: Session, caller_id: str, today: date, monday: date) -> Decimal:
        value = session.scalar(
            select(func.coalesce(func.sum(DailySpend.total_usd + DailySpend.reserved_usd), 0)).where(
                DailySpend.caller_id == caller_id,
                DailySpend.spend_date >= monday,
                DailySpend.spend_date <= today,
            )
        )
        return _to_decimal(value)

    def get_spend_context(self, caller_id: str) -> SpendContext:
        now = self._clock()
        today = day_start(now).date()
        monday = week_start(now).date()
        with db.session_scope(self._db_session) as session:
            row = session.execute(
                select(DailySpend).where(
                    DailySpend.caller_id == caller_id,
                    DailySpend.spend_date == today,
                )
            ).scalar_one_or_none()
            weekly = self._weekly_total(session, caller_id, today, monday)

        daily = ZERO
        count = 0
        if row is not None:
            daily = _to_decimal(row.total_usd) + _to_decimal(row.reserved_usd)
            count = row.call_count
        return SpendContext(
            caller_id=caller_id,
            daily_spent_usd=daily,
            weekly_spent_usd=weekly,
            daily_call_count=count,
            as_of=now,
        )

    def record_decision(self, caller_id, decision, *, endpoint, price_usd) -> None:
        now = self._clock()
        today = day_start(now).date()
        call_id = generate_id("call")
        with db.session_scope(self._db_session) as session:
            if not decision.allow:
                self._ensure_day(session, caller_id, today)
            with _transaction(session):
                session.add(
                    SpendCall(
                        call_id=call_id,
                        caller_id=caller_id,
                        endpoint=endpoint,
                        price_usd=Decimal(price_usd),
                        spend_date=today,
                        paid=False,
                        status=CallStatus.ALLOWED if decision.allow else CallStatus.BLOCKED,
                    )
                )
                session.flush()
                session.add(
                    PolicyDecisionRecord(
                        call_id=call_id,
                        caller_id=caller_id,
                        policy_id=decision.policy_id,
                        allowed=decision.allow,
                        reason=decision.reason,
                        rule_id=decision.rule_id,
                        projected_spend_usd=decision.projected_spend,
                        daily_spent_usd=decision.current_daily_spend,
                        weekly_spent_usd=decision.current_weekly_spend,
                        trace=[entry.model_dump(mode="json") for entry in decision.trace],
                    )
                )
                if not decision.allow:
                    self._increment(session, caller_id, today, blocked_count=1)

    def record_payment(self, caller_id, amount_usd, *, endpoint, nonce, payment_ref) -> None:
        amount = Decimal(amount_usd)
        today = day_start(self._clock()).date()
        with db.session_scope(self._db_session) as session:
            self._ensure_day(session, caller_id, today)
            with _transaction(session):
                session.add(
                    SpendCall(
                        call_id=generate_id("call"),
                        caller_id=caller_id,
                        endpoint=endpoint,
                        price_usd=amount,
                        spend_date=today,
                        paid=True,
                        status=CallStatus.PAID,
                        nonce=nonce,
                        payment_ref=payment_ref,
                    )
                )
                self._increment(session, caller_id, today, total_usd=amount, call_count=1)
        logger.info(
            "Payment recorded",
            extra={"caller_id": caller_id, "amount_usd": str(amount), "endpoint": endpoint, "nonce": nonce},
        )

    def reserve(self, caller_id, amount_usd, policy, *, endpoint="") -> Reservation | None:
        """Conditional increment bounded by the daily cap.

        The daily bound is enforced by a single UPDATE. The weekly bound is
        checked afterwards in the same transaction, which is serialised on
        SQLite but not under READ COMMITTED on other engines.
        """

        amount = Decimal(amount_usd)
        now = self._clock()
        today = day_start(now).date()
        monday = week_start(now).date()
        reservation_id = generate_id("call")

        with db.session_scope(self._db_session) as session:
            self._ensure_day(session, caller_id, today)
            with _transaction(session):
                result = session.execute(
                    update(DailySpend)
                    .where(
                        DailySpend.caller_id == caller_id,
                        DailySpend.spend_date == today,
                        DailySpend.total_usd + DailySpend.reserved_usd + amount <= policy.daily_cap_usd,
                    )
                    .values(reserved_usd=DailySpend.reserved_usd + amount, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.info("Reservation refused by daily cap", extra={"caller_id": caller_id})
                    return None

                if policy.weekly_cap_usd is not None:
                    if self._weekly_total(session, caller_id, today, monday) > policy.weekly_cap_usd:
                        self._increment(session, caller_id, today, reserved_usd=-amount)
                        logger.info("Reservation refused by weekly cap", extra={"caller_id": caller_id})
                        return None

                session.add(
                    SpendCall(
                        call_id=reservation_id,
                        caller_id=caller_id,
                        endpoint=endpoint,
                        price_usd=amount,
                        spend_date=today,
                        paid=False,
                        status=CallStatus.RESERVED,
                    )
                )

        return Reservation(
            reservation_id=reservation_id,
            caller_id=caller_id,
            amount_usd=amount,
            spend_date=today,
            endpoint=endpoint,
        )

    def commit(self, reservation, *, nonce, payment_ref) -> None:
        with db.session_scope(self._db_session) as session:
            with _transaction(session):
                result = session.execute(
                    update(SpendCall)
                    .where(
                        SpendCall.call_id == reservation.reservation_id,
                        SpendCall.status == CallStatus.RESERVED,
                    )
                    .values(status=CallStatus.PAID, paid=True, nonce=nonce, payment_ref=payment_ref)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise KeyError(f"Unknown or settled reservation {reservation.reservation_id}")
                self._increment(
                    session,
                    reservation.caller_id,
                    reservation.spend_date,
                    reserved_usd=-reservation.amount_usd,
                    total_usd=reservation.amount_usd,
                    call_count=1,
                )
        logger.info(
            "Reservation committed",
            extra={"caller_id": reservation.caller_id, "amount_usd": str(reservation.amount_usd), "nonce": nonce},
        )

    def release(self, reservation) -> None:
        with db.session_scope(self._db_session) as session:
            with _transaction(session):
                result = session.execute(
                    update(SpendCall)
                    .where(
                        SpendCall.call_id == reservation.reservation_id,
                        SpendCall.status == CallStatus.RESERVED,
                    )
                    .values(status=CallStatus.RELEASED)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    self._increment(
                        session,
                        reservation.caller_id,
                        reservation.spend_date,
                        reserved_usd=-reservation.amount_usd,
                    )


__all__ = [
    "Reservation",
    "PaymentRecord",
    "DecisionRecord",
    "SpendLedger",
    "InMemorySpendLedger",
    "SqlSpendLedger",
]

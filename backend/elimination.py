"""Strike-based warn/eliminate policy for accepted violations.

A participant moves active -> warned(1) -> warned(2) -> eliminated, one step
per penalized cheat report. The authoritative counter lives in the store,
which evaluates this policy atomically (see store.evaluate_violation); the
class here supplies the penalty schedule and messages and a pure ``apply``
used by the in-memory store and tests.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel

from models import DeviceClass, ParticipantStatus, Severity

DEFAULT_PENALTIES: Dict[str, Dict[str, List[int]]] = {
    DeviceClass.DESKTOP: {Severity.SOFT: [50, 100], Severity.SERIOUS: [100, 200]},
    DeviceClass.MOBILE: {Severity.SOFT: [25, 50], Severity.SERIOUS: [50, 100]},
}


class Standing(BaseModel):
    violationCount: int = 0
    status: str = ParticipantStatus.ACTIVE

    @property
    def label(self) -> str:
        if self.status == ParticipantStatus.ELIMINATED:
            return "eliminated"
        if self.violationCount == 0:
            return "active"
        return f"warned({self.violationCount})"


class Transition(BaseModel):
    violationCount: int
    status: str
    pointsDelta: int
    message: str
    severity: str

    @property
    def eliminated(self) -> bool:
        return self.status == ParticipantStatus.ELIMINATED


class EliminationPolicy:
    def __init__(
        self,
        strike_limit: int = 3,
        penalties: Optional[Dict[str, Dict[str, List[int]]]] = None,
    ):
        if strike_limit < 1:
            raise ValueError("strike_limit must be at least 1")
        self.strike_limit = strike_limit
        self.penalties = penalties or DEFAULT_PENALTIES

    @classmethod
    def from_config(cls, cfg) -> "EliminationPolicy":
        return cls(strike_limit=cfg.STRIKE_LIMIT, penalties=cfg.PENALTIES)

    def penalty_schedule(self, device_class: str, severity: str) -> List[int]:
        """Deduction for strikes 1..strike_limit; the eliminating strike costs nothing."""
        by_severity = self.penalties.get(device_class) or self.penalties[DeviceClass.DESKTOP]
        warnings = by_severity.get(severity) or by_severity[Severity.SOFT]
        schedule = []
        for strike in range(1, self.strike_limit):
            schedule.append(warnings[min(strike, len(warnings)) - 1])
        schedule.append(0)
        return schedule

    def penalty_for(self, device_class: str, severity: str, strike: int) -> int:
        schedule = self.penalty_schedule(device_class, severity)
        return schedule[min(max(strike, 1), len(schedule)) - 1]

    def message_for(self, strike: int, penalty: int) -> str:
        remaining = self.strike_limit - strike
        if remaining <= 0:
            return "You have been eliminated from the quiz due to multiple cheat attempts."
        if remaining == 1:
            return f"Final warning: one more strike eliminates you. -{penalty} points."
        return (
            f"Warning {strike}/{self.strike_limit}: suspicious activity detected. "
            f"-{penalty} points."
        )

    def apply(self, standing: Standing, device_class: str, severity: str) -> Optional[Transition]:
        """Next state for one penalized report, or None once eliminated."""
        if standing.status == ParticipantStatus.ELIMINATED:
            return None
        strike = standing.violationCount + 1
        penalty = self.penalty_for(device_class, severity, strike)
        status = ParticipantStatus.ELIMINATED if strike >= self.strike_limit else standing.status
        return Transition(
            violationCount=strike,
            status=status,
            pointsDelta=-penalty,
            message=self.message_for(strike, penalty),
            severity=severity,
        )

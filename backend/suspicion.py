"""Per-session classification of client-originated suspicious signals.

Clients forward raw browser/runtime signals (visibility, focus, clipboard,
pointer/touch, keyboard, devtools probes). Each signal kind is handled by a
pluggable ``SignalRule``; the detector applies the grace period, the
device-class policy and per-reason rate limiting, and yields at most one
``Detection`` per signal.
"""

import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, FrozenSet, Iterable, Optional

from pydantic import BaseModel

from models import DeviceClass, Reason, Severity

logger = logging.getLogger(__name__)

_MOBILE_UA = re.compile(r"Android|iPhone|iPad|iPod|Mobile|Opera Mini|IEMobile", re.I)
MOBILE_VIEWPORT_MAX = 768


def classify_device(
    viewport_width: Optional[int] = None, touch_points: int = 0, user_agent: str = ""
) -> str:
    """Desktop vs mobile from the hints a browser exposes at join time."""
    if user_agent and _MOBILE_UA.search(user_agent):
        return DeviceClass.MOBILE
    if touch_points > 0 and viewport_width is not None and viewport_width < MOBILE_VIEWPORT_MAX:
        return DeviceClass.MOBILE
    return DeviceClass.DESKTOP


class Signal(BaseModel):
    kind: str
    detail: str = ""
    value: Optional[float] = None
    at: Optional[float] = None  # epoch seconds, defaults to the detector clock


class Detection(BaseModel):
    kind: str
    reason: str
    severity: str
    penalized: bool
    detail: str = ""


@dataclass(slots=True)
class DetectionPolicy:
    """Thresholds for one device class."""

    device_class: str
    focus_away_sec: float
    background_away_sec: float
    debugger_delta_ms: float
    viewport_delta_px: float
    click_burst_threshold: int = 10  # clicks per 100 ms
    touch_rate_threshold: float = 15.0  # touches per second
    multi_touch_threshold: int = 3
    long_touch_ms: float = 3000.0
    rapid_input_strikes: int = 3
    disabled_kinds: FrozenSet[str] = frozenset()


DESKTOP_POLICY = DetectionPolicy(
    device_class=DeviceClass.DESKTOP,
    focus_away_sec=5.0,
    background_away_sec=5.0,
    debugger_delta_ms=100.0,
    viewport_delta_px=160.0,
)

# Mobile browsers churn visibility/focus on notifications, calls and the
# virtual keyboard, so only serious signals count there.
MOBILE_POLICY = DetectionPolicy(
    device_class=DeviceClass.MOBILE,
    focus_away_sec=5.0,
    background_away_sec=45.0,
    debugger_delta_ms=200.0,
    viewport_delta_px=100.0,
)


def policy_for(device_class: str, disabled: Iterable[str] = ()) -> DetectionPolicy:
    base = MOBILE_POLICY if device_class == DeviceClass.MOBILE else DESKTOP_POLICY
    disabled = frozenset(disabled)
    if not disabled:
        return base
    return replace(base, disabled_kinds=disabled)


@dataclass(slots=True)
class DetectorState:
    """Counters for one question attempt; replaced on every new question."""

    last_reported: Dict[str, float] = field(default_factory=dict)
    strikes: Dict[str, int] = field(default_factory=dict)
    observed: int = 0
    suppressed: int = 0


# ============================================================================
# RULES
# ============================================================================


class SignalRule:
    """Classifies one signal kind.

    ``desktop`` / ``mobile`` give the severity on each track: ``Severity.INFO``
    logs without penalty, ``None`` ignores the signal entirely.
    """

    kind = ""
    reason = ""
    cooldown_sec = 3.0
    desktop: Optional[str] = Severity.SOFT
    mobile: Optional[str] = Severity.INFO

    def triggered(self, signal: Signal, policy: DetectionPolicy, state: DetectorState) -> bool:
        return True

    def severity_for(self, signal: Signal, policy: DetectionPolicy) -> Optional[str]:
        return self.mobile if policy.device_class == DeviceClass.MOBILE else self.desktop

    def evaluate(
        self, signal: Signal, policy: DetectionPolicy, state: DetectorState
    ) -> Optional[Detection]:
        if not self.triggered(signal, policy, state):
            return None
        severity = self.severity_for(signal, policy)
        if severity is None:
            return None
        return Detection(
            kind=self.kind,
            reason=self.reason,
            severity=severity,
            penalized=severity != Severity.INFO,
            detail=signal.detail or self.kind,
        )


class VisibilityRule(SignalRule):
    kind = "visibility_hidden"
    reason = Reason.TAB_SWITCH
    cooldown_sec = 2.0


class FocusReturnRule(SignalRule):
    """Window focus came back after ``value`` seconds away."""

    kind = "focus_regained"
    reason = Reason.EXTENDED_SWITCH
    cooldown_sec = 5.0

    def triggered(self, signal, policy, state):
        return (signal.value or 0.0) > policy.focus_away_sec


class BackgroundRule(SignalRule):
    """App/tab came back to the foreground after ``value`` seconds."""

    kind = "app_background"
    reason = Reason.APP_BACKGROUND
    cooldown_sec = 10.0
    mobile = Severity.SERIOUS

    def severity_for(self, signal, policy):
        away = signal.value or 0.0
        if away > policy.background_away_sec:
            return super().severity_for(signal, policy)
        # short blips are only worth a log line on mobile
        return Severity.INFO if policy.device_class == DeviceClass.MOBILE else None


class BackNavigationRule(SignalRule):
    kind = "back_navigation"
    reason = Reason.BACK_NAVIGATION


class DebuggerProbeRule(SignalRule):
    kind = "debugger_probe"
    reason = Reason.DEVTOOLS_TIMING
    cooldown_sec = 10.0
    desktop = Severity.SERIOUS
    mobile = Severity.SERIOUS

    def triggered(self, signal, policy, state):
        return (signal.value or 0.0) > policy.debugger_delta_ms


class ViewportDeltaRule(SignalRule):
    """Outer/inner window dimension gap, a docked devtools panel."""

    kind = "viewport_delta"
    reason = Reason.DEVTOOLS_DIMENSION
    cooldown_sec = 10.0
    desktop = Severity.SERIOUS
    mobile = Severity.SERIOUS

    def triggered(self, signal, policy, state):
        return (signal.value or 0.0) > policy.viewport_delta_px


class ClipboardRule(SignalRule):
    kind = "clipboard"
    reason = Reason.CLIPBOARD
    cooldown_sec = 1.0


class ContextMenuRule(SignalRule):
    kind = "context_menu"
    reason = Reason.CONTEXT_MENU
    cooldown_sec = 1.0


class SelectionRule(SignalRule):
    kind = "selection_start"
    reason = Reason.TEXT_SELECTION
    cooldown_sec = 1.0


class ShortcutKeyRule(SignalRule):
    """Ctrl/Cmd + A, C, V or X. ``detail`` looks like "ctrl+c" or "meta+v"."""

    kind = "key_combo"
    reason = Reason.SHORTCUT_KEY
    cooldown_sec = 1.0
    keys = frozenset("acvx")

    def triggered(self, signal, policy, state):
        parts = signal.detail.lower().replace(" ", "").split("+")
        if len(parts) < 2 or not {"ctrl", "control", "meta", "cmd"} & set(parts[:-1]):
            return False
        return parts[-1] in self.keys


class _SustainedRule(SignalRule):
    """Fires only after ``rapid_input_strikes`` consecutive over-threshold samples."""

    def threshold(self, policy: DetectionPolicy) -> float:
        raise NotImplementedError

    def triggered(self, signal, policy, state):
        if (signal.value or 0.0) <= self.threshold(policy):
            state.strikes.pop(self.kind, None)
            return False
        strikes = state.strikes.get(self.kind, 0) + 1
        if strikes < policy.rapid_input_strikes:
            state.strikes[self.kind] = strikes
            return False
        state.strikes.pop(self.kind, None)
        return True


class ClickBurstRule(_SustainedRule):
    kind = "click_burst"
    reason = Reason.RAPID_CLICKING
    cooldown_sec = 5.0

    def threshold(self, policy):
        return policy.click_burst_threshold


class TouchBurstRule(_SustainedRule):
    kind = "touch_burst"
    reason = Reason.RAPID_TOUCH
    cooldown_sec = 5.0
    desktop = Severity.INFO
    mobile = Severity.SERIOUS

    def threshold(self, policy):
        return policy.touch_rate_threshold


class MultiTouchRule(SignalRule):
    kind = "multi_touch"
    reason = Reason.MULTI_TOUCH
    cooldown_sec = 5.0
    desktop = Severity.INFO
    mobile = Severity.SERIOUS

    def triggered(self, signal, policy, state):
        return (signal.value or 0.0) > policy.multi_touch_threshold


class LongTouchRule(SignalRule):
    kind = "long_touch"
    reason = Reason.LONG_TOUCH
    cooldown_sec = 5.0
    desktop = Severity.INFO
    mobile = Severity.SERIOUS

    def triggered(self, signal, policy, state):
        return (signal.value or 0.0) > policy.long_touch_ms


class AppClosureRule(SignalRule):
    """Page unload or a page-hide that is not going into the back/forward cache.

    ``value`` is 1 when the browser reported the page as persisted.
    """

    kind = "app_closure"
    reason = Reason.APP_CLOSURE
    cooldown_sec = 10.0
    desktop = Severity.INFO
    mobile = Severity.SERIOUS

    def triggered(self, signal, policy, state):
        return not signal.value


RULES: Dict[str, SignalRule] = {
    rule.kind: rule
    for rule in (
        VisibilityRule(),
        FocusReturnRule(),
        BackgroundRule(),
        BackNavigationRule(),
        DebuggerProbeRule(),
        ViewportDeltaRule(),
        ClipboardRule(),
        ContextMenuRule(),
        SelectionRule(),
        ShortcutKeyRule(),
        ClickBurstRule(),
        TouchBurstRule(),
        MultiTouchRule(),
        LongTouchRule(),
        AppClosureRule(),
    )
}


# ============================================================================
# DETECTOR
# ============================================================================


class SuspicionDetector:
    """Stateful classifier for one participant's current question attempt."""

    def __init__(
        self,
        policy: DetectionPolicy,
        joined_at: float,
        grace_period_sec: float = 3.0,
        rules: Optional[Dict[str, SignalRule]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.policy = policy
        self.joined_at = joined_at
        self.grace_period_sec = grace_period_sec
        self.rules = RULES if rules is None else rules
        self._clock = clock
        self.state = DetectorState()

    def reset(self) -> None:
        self.state = DetectorState()

    def in_grace_period(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return now - self.joined_at < self.grace_period_sec

    def observe(self, signal: Signal) -> Optional[Detection]:
        now = self._clock() if signal.at is None else signal.at
        self.state.observed += 1

        if self.in_grace_period(now):
            return None
        if signal.kind in self.policy.disabled_kinds:
            return None

        rule = self.rules.get(signal.kind)
        if rule is None:
            logger.debug(f"Unknown signal kind ignored: {signal.kind}")
            return None

        detection = rule.evaluate(signal, self.policy, self.state)
        if detection is None:
            return None

        last = self.state.last_reported.get(detection.reason)
        if last is not None and now - last < rule.cooldown_sec:
            self.state.suppressed += 1
            return None
        self.state.last_reported[detection.reason] = now
        return detection

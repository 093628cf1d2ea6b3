from models import DeviceClass, Reason, Severity
from suspicion import (
    DESKTOP_POLICY,
    MOBILE_POLICY,
    Signal,
    SuspicionDetector,
    classify_device,
    policy_for,
)

JOINED = 1_000.0


def detector(policy=DESKTOP_POLICY, grace=3.0):
    return SuspicionDetector(policy, joined_at=JOINED, grace_period_sec=grace, clock=lambda: JOINED)


def sig(kind, at, value=None, detail=""):
    return Signal(kind=kind, at=JOINED + at, value=value, detail=detail)


# ============================================================================
# DEVICE CLASS
# ============================================================================


def test_classify_device():
    assert classify_device(1440, 0, "Mozilla/5.0 (Windows NT 10.0)") == DeviceClass.DESKTOP
    assert classify_device(390, 5, "") == DeviceClass.MOBILE
    assert classify_device(1280, 0, "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0)") == DeviceClass.MOBILE
    # touch laptop with a wide screen stays on the desktop track
    assert classify_device(1920, 10, "") == DeviceClass.DESKTOP


# ============================================================================
# DESKTOP TRACK
# ============================================================================


def test_grace_period_suppresses_everything():
    d = detector()
    assert d.observe(sig("visibility_hidden", 1)) is None
    assert d.observe(sig("debugger_probe", 2.9, value=500)) is None
    detection = d.observe(sig("visibility_hidden", 3.5))
    assert detection.reason == Reason.TAB_SWITCH


def test_tab_switch_is_soft_violation():
    detection = detector().observe(sig("visibility_hidden", 10))
    assert detection.penalized is True
    assert detection.severity == Severity.SOFT


def test_focus_return_threshold():
    d = detector()
    assert d.observe(sig("focus_regained", 10, value=4.0)) is None
    detection = d.observe(sig("focus_regained", 20, value=6.5))
    assert detection.reason == Reason.EXTENDED_SWITCH
    assert detection.severity == Severity.SOFT


def test_devtools_signals_are_serious():
    d = detector()
    assert d.observe(sig("debugger_probe", 10, value=80)) is None
    timing = d.observe(sig("debugger_probe", 11, value=150))
    assert timing.reason == Reason.DEVTOOLS_TIMING
    assert timing.severity == Severity.SERIOUS
    dimension = d.observe(sig("viewport_delta", 12, value=200))
    assert dimension.reason == Reason.DEVTOOLS_DIMENSION


def test_shortcut_keys():
    d = detector()
    assert d.observe(sig("key_combo", 10, detail="ctrl+z")) is None
    assert d.observe(sig("key_combo", 11, detail="c")) is None
    detection = d.observe(sig("key_combo", 12, detail="Meta+V"))
    assert detection.reason == Reason.SHORTCUT_KEY


def test_rate_limit_per_reason():
    d = detector()
    assert d.observe(sig("visibility_hidden", 10)) is not None
    assert d.observe(sig("visibility_hidden", 11)) is None
    assert d.observe(sig("visibility_hidden", 12.5)) is not None
    # other reasons have their own window
    assert d.observe(sig("clipboard", 12.6, detail="copy")) is not None
    assert d.state.suppressed == 1


def test_click_burst_needs_sustained_rate():
    d = detector()
    assert d.observe(sig("click_burst", 10, value=12)) is None
    assert d.observe(sig("click_burst", 10.1, value=12)) is None
    # a calm sample breaks the streak
    assert d.observe(sig("click_burst", 10.2, value=3)) is None
    assert d.observe(sig("click_burst", 10.3, value=12)) is None
    assert d.observe(sig("click_burst", 10.4, value=12)) is None
    detection = d.observe(sig("click_burst", 10.5, value=12))
    assert detection.reason == Reason.RAPID_CLICKING


def test_short_background_ignored_on_desktop():
    d = detector()
    assert d.observe(sig("app_background", 10, value=2)) is None
    assert d.observe(sig("app_background", 30, value=8)).penalized is True


def test_unknown_and_disabled_kinds():
    d = detector(policy_for(DeviceClass.DESKTOP, disabled=["clipboard"]))
    assert d.observe(sig("clipboard", 10)) is None
    assert d.observe(sig("teleport", 11)) is None
    assert d.observe(sig("context_menu", 12)) is not None


def test_reset_clears_rate_limits():
    d = detector()
    d.observe(sig("visibility_hidden", 10))
    d.reset()
    assert d.observe(sig("visibility_hidden", 10.5)) is not None


# ============================================================================
# MOBILE TRACK
# ============================================================================


def test_mobile_copy_is_informational():
    detection = detector(MOBILE_POLICY).observe(sig("clipboard", 10, detail="copy"))
    assert detection.severity == Severity.INFO
    assert detection.penalized is False


def test_mobile_tab_switch_is_informational():
    detection = detector(MOBILE_POLICY).observe(sig("visibility_hidden", 10))
    assert detection.penalized is False


def test_mobile_devtools_thresholds():
    d = detector(MOBILE_POLICY)
    assert d.observe(sig("debugger_probe", 10, value=150)) is None
    assert d.observe(sig("debugger_probe", 11, value=250)).penalized is True
    assert d.observe(sig("viewport_delta", 12, value=120)).severity == Severity.SERIOUS


def test_mobile_background_band():
    d = detector(MOBILE_POLICY)
    assert d.observe(sig("app_background", 10, value=30)).penalized is False
    detection = d.observe(sig("app_background", 30, value=50))
    assert detection.penalized is True
    assert detection.severity == Severity.SERIOUS


def test_mobile_touch_signals():
    d = detector(MOBILE_POLICY)
    assert d.observe(sig("multi_touch", 10, value=3)) is None
    assert d.observe(sig("multi_touch", 11, value=4)).penalized is True
    assert d.observe(sig("long_touch", 12, value=3500)).penalized is True
    for at in (13, 13.1):
        assert d.observe(sig("touch_burst", at, value=20)) is None
    assert d.observe(sig("touch_burst", 13.2, value=20)).reason == Reason.RAPID_TOUCH


def test_app_closure_ignores_persisted_pages():
    d = detector(MOBILE_POLICY)
    assert d.observe(sig("app_closure", 10, value=1)) is None
    assert d.observe(sig("app_closure", 11)).reason == Reason.APP_CLOSURE


def test_touch_signals_are_informational_on_desktop():
    detection = detector().observe(sig("multi_touch", 10, value=5))
    assert detection.penalized is False

"""
Power-state diagnostics.

A rule table is a plain sequence of :class:`Rule` rows; ``evaluate`` runs
every row against a snapshot and returns the violations ordered by severity
(critical first) and then rule id. Evaluation is pure: no I/O, no state,
safe to call from any number of tasks or threads at once.

Usage:
    from plan10.diagnostics import STANDARD_RULES, evaluate

    findings = evaluate(snapshot, STANDARD_RULES, thresholds)
"""

from collections import Counter
from typing import Iterable, Optional, Sequence

from .models import ExitCode, Finding, PowerSnapshot, PowerSource, Rule, Severity, Thresholds


def _on_battery(s: PowerSnapshot) -> bool:
    return s.power_source is PowerSource.BATTERY


STANDARD_RULES: tuple[Rule, ...] = (
    Rule(
        id="hibernate-mode",
        predicate=lambda s, t: s.hibernate_mode is not None and s.hibernate_mode != 0,
        severity=Severity.CRITICAL,
        message_template="hibernatemode is {hibernate_mode} (should be 0 for servers)",
        fix_command="set hibernatemode 0",
    ),
    Rule(
        id="system-sleep",
        predicate=lambda s, t: s.sleep is not None and s.sleep != 0,
        severity=Severity.CRITICAL,
        message_template="System sleep is enabled ({sleep} minutes)",
        fix_command="set sleep 0",
    ),
    Rule(
        id="disk-sleep",
        predicate=lambda s, t: s.disk_sleep is not None and s.disk_sleep != 0,
        severity=Severity.WARNING,
        message_template="Disk sleep is enabled ({disk_sleep} minutes)",
        fix_command="set disksleep 0",
    ),
    Rule(
        id="standby",
        predicate=lambda s, t: bool(s.standby),
        severity=Severity.WARNING,
        message_template="standby is enabled (should be 0 for servers)",
        fix_command="set standby 0",
    ),
    Rule(
        id="power-nap",
        predicate=lambda s, t: bool(s.power_nap),
        severity=Severity.WARNING,
        message_template="powernap is enabled (should be 0 for servers)",
        fix_command="set powernap 0",
    ),
    Rule(
        id="auto-power-off",
        predicate=lambda s, t: bool(s.auto_power_off),
        severity=Severity.WARNING,
        message_template="Auto power off is enabled; the system may shut down automatically",
        fix_command="set autopoweroff 0",
    ),
    Rule(
        id="halt-level",
        predicate=lambda s, t: s.halt_level is not None and s.halt_level > t.max_halt_level_percent,
        severity=Severity.WARNING,
        message_template=(
            "haltlevel is {halt_level}% (should be {max_halt_level_percent}% or lower); "
            "the system may shut down early on battery"
        ),
        fix_command="set haltlevel {target_halt_level_percent}",
        requires_battery=True,
    ),
    Rule(
        id="halt-after",
        predicate=lambda s, t: s.halt_after is not None and s.halt_after != 0,
        severity=Severity.INFO,
        message_template="haltafter is {halt_after} minutes; the system halts after that long on battery",
        fix_command="set haltafter 0",
        requires_battery=True,
    ),
    Rule(
        id="caffeinate",
        predicate=lambda s, t: s.caffeinate_pid is None,
        severity=Severity.WARNING,
        message_template="caffeinate is not running; nothing is holding the system awake",
        fix_command="start caffeinate -imsud",
    ),
    Rule(
        id="on-battery",
        predicate=lambda s, t: _on_battery(s),
        severity=Severity.INFO,
        message_template="Running on battery power ({battery_pct}%)",
        requires_battery=True,
    ),
    Rule(
        id="battery-low",
        predicate=lambda s, t: (
            _on_battery(s)
            and t.battery_critical_level < s.battery_pct <= t.battery_warning_level
        ),
        severity=Severity.WARNING,
        message_template="Battery level low ({battery_pct}%, warning at {battery_warning_level}%)",
        requires_battery=True,
    ),
    Rule(
        id="battery-critical",
        predicate=lambda s, t: _on_battery(s) and s.battery_pct <= t.battery_critical_level,
        severity=Severity.CRITICAL,
        message_template="Battery level critical ({battery_pct}%)",
        requires_battery=True,
    ),
)


def _sort_key(finding: Finding) -> tuple[int, str]:
    return (-finding.severity.rank, finding.rule_id)


def evaluate(
    snapshot: PowerSnapshot,
    rules: Sequence[Rule] = STANDARD_RULES,
    thresholds: Optional[Thresholds] = None,
) -> list[Finding]:
    """
    Evaluate ``snapshot`` against ``rules``.

    Battery-dependent rules are skipped when the host reports no battery.

    Returns:
        Findings sorted by severity descending, then rule id ascending
    """
    thresholds = thresholds or Thresholds()
    findings = []
    for rule in rules:
        if rule.requires_battery and not snapshot.has_battery:
            continue
        if rule.predicate(snapshot, thresholds):
            findings.append(rule.render(snapshot, thresholds))
    return sorted(findings, key=_sort_key)


def summarize(findings: Iterable[Finding]) -> dict[str, int]:
    """Count findings per severity (every severity present, zero included)."""
    counts = Counter(f.severity for f in findings)
    return {severity.value: counts.get(severity, 0) for severity in Severity}


def diagnostics_exit_code(findings: Iterable[Finding]) -> ExitCode:
    if any(f.severity is Severity.CRITICAL for f in findings):
        return ExitCode.PARTIAL_FAILURE
    return ExitCode.SUCCESS

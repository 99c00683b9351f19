"""Activation rules: which telemetry gets recorded.

Rules form a whitelist per signal family (trace, metric, log):

- No rules for a family: everything in that family is recorded
- Otherwise the most specific matching rule decides; nothing matching
  means not recorded

Specificity order: a tenant-specific rule beats an ALL rule; then an exact
pattern beats a wildcard pattern, and a longer literal prefix beats a
shorter one ("billing.charge" > "billing.*" > "*").

A matching rule still declines when it is disabled, outside its time
window, below its minimum log level (log rules), or when the sampling
draw misses.
"""

from __future__ import annotations

import random
import re
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from telemark.contracts.enums import ActivationSignal, LogLevel
from telemark.core.config import ActivationRuleSettings

ALL_TENANTS = "ALL"


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$")


def _specificity(rule: ActivationRuleSettings) -> tuple[int, int, int]:
    tenant_rank = 0 if rule.tenant_id == ALL_TENANTS else 1
    if "*" not in rule.pattern:
        return tenant_rank, 2, len(rule.pattern)
    literal_prefix = rule.pattern.split("*", 1)[0]
    return tenant_rank, 1 if literal_prefix else 0, len(literal_prefix)


class ActivationPolicy:
    """Evaluates activation rules for one process.

    Args:
        rules: Configured rules (may be empty)
        clock: Returns the current time; injectable for tests
        sampler: Returns a float in [0, 1); injectable for tests
    """

    def __init__(
        self,
        rules: Sequence[ActivationRuleSettings] = (),
        *,
        clock: Callable[[], datetime] | None = None,
        sampler: Callable[[], float] | None = None,
    ) -> None:
        self._rules = [(rule, _compile_pattern(rule.pattern)) for rule in rules]
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sampler = sampler or random.random

    def _match(self, signal: ActivationSignal, name: str, tenant_id: str | None) -> ActivationRuleSettings | None | bool:
        candidates = [rule for rule, _ in self._rules if rule.signal == signal]
        if not candidates:
            return True
        matching = [
            rule
            for rule, compiled in self._rules
            if rule.signal == signal
            and compiled.match(name)
            and (rule.tenant_id == ALL_TENANTS or rule.tenant_id == tenant_id)
        ]
        if not matching:
            return None
        return max(matching, key=_specificity)

    def _in_window(self, rule: ActivationRuleSettings) -> bool:
        now = self._clock()
        if rule.enabled_from is not None and now < _aware(rule.enabled_from):
            return False
        return not (rule.enabled_to is not None and now > _aware(rule.enabled_to))

    def _sample(self, rule: ActivationRuleSettings) -> bool:
        if rule.sampling_rate >= 1.0:
            return True
        if rule.sampling_rate <= 0.0:
            return False
        return self._sampler() < rule.sampling_rate

    def _decide(self, signal: ActivationSignal, name: str, tenant_id: str | None, level: LogLevel | None = None) -> bool:
        match self._match(signal, name, tenant_id):
            case True:
                return True
            case None:
                return False
            case ActivationRuleSettings() as rule:
                if not rule.enabled or not self._in_window(rule):
                    return False
                if level is not None and rule.min_level is not None and level.rank < rule.min_level.rank:
                    return False
                return self._sample(rule)
            case _:
                return False

    def should_trace(self, operation: str, tenant_id: str | None = None) -> bool:
        """Decide whether a new trace is recorded (sampled)."""
        return self._decide(ActivationSignal.TRACE, operation, tenant_id)

    def should_record_metric(self, name: str, tenant_id: str | None = None) -> bool:
        return self._decide(ActivationSignal.METRIC, name, tenant_id)

    def should_log(self, level: LogLevel, source: str | None = None, tenant_id: str | None = None) -> bool:
        return self._decide(ActivationSignal.LOG, source or "*", tenant_id, level)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

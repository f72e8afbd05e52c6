"""Regex and placeholder helpers shared by the resolver and dependent records.

Configured patterns come from people editing bindings in the Perfana UI, so a
pattern may be invalid. Invalid patterns never raise here: they are logged and
replaced by a literal (escaped) match of the same text.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Pattern

from .models import SYSTEM_UNDER_TEST, TEST_ENVIRONMENT, ApplicationDashboardVariable, TestRun

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


def compile_or_literal(pattern: str, flags: int = 0, *, context: str = "") -> Pattern[str]:
    """Compile ``pattern``; fall back to an escaped literal when it is invalid.

    Parameters
    ----------
    pattern: str
        Regular expression as configured.
    flags: int
        ``re`` flags to compile with.
    context: str
        Where the pattern came from, for the warning log.

    Returns
    -------
    Pattern[str]
        The compiled pattern, or a literal match of the same text.
    """
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        logger.warning(
            "matching.regex.invalid",
            extra={"pattern": pattern, "context": context, "error": str(exc)},
        )
        return re.compile(re.escape(pattern), flags)


def compile_or_none(pattern: str, *, context: str = "") -> Optional[Pattern[str]]:
    """Compile ``pattern`` or return None when it is invalid (caller skips filtering)."""
    try:
        return re.compile(pattern)
    except re.error as exc:
        logger.warning(
            "matching.regex.ignored",
            extra={"pattern": pattern, "context": context, "error": str(exc)},
        )
        return None


def strip_regex_delimiters(regex: Optional[str]) -> str:
    """Turn a Grafana ``/pattern/`` regex into ``pattern``."""
    if not regex:
        return ""
    if len(regex) >= 2 and regex.startswith("/") and regex.endswith("/"):
        return regex[1:-1]
    return regex


def dynamic_values(test_run: TestRun) -> Dict[str, str]:
    """Placeholder table for ``{name}`` substitution from a test run."""
    values: Dict[str, str] = {}
    for variable in test_run.variables:
        if variable.value is not None:
            values[variable.name] = str(variable.value)
    values.update(
        {
            "application": test_run.application,
            "testEnvironment": test_run.test_environment,
            "testType": test_run.test_type,
            "testRunId": test_run.test_run_id,
        }
    )
    return values


def replace_dynamic_values(text: str, test_run: TestRun) -> str:
    """Substitute ``{placeholder}`` occurrences with test run fields.

    Unknown placeholders (including regex quantifiers such as ``{2,3}``) are
    left untouched.
    """
    if not text or "{" not in text:
        return text
    table = dynamic_values(test_run)

    def _sub(match: "re.Match[str]") -> str:
        return table.get(match.group(1), match.group(0))

    return _PLACEHOLDER.sub(_sub, text)


def match_value(
    rules: Iterable[Any], variable_name: str, value: str, test_run: TestRun
) -> bool:
    """True when some rule for ``variable_name`` matches ``value``.

    ``rules`` are ``VariableRegex`` entries; their regex may embed dynamic
    placeholders.
    """
    matched = False
    for rule in rules:
        if rule.name != variable_name:
            continue
        pattern = compile_or_literal(
            replace_dynamic_values(rule.regex, test_run),
            context=f"matchRegexForVariables:{variable_name}",
        )
        if pattern.search(value):
            matched = True
    return matched


def join_values(values: List[str], all_value: str = ".*") -> str:
    """Join values as a regex alternation, mapping ``All`` to ``all_value``."""
    return "|".join(all_value if v == "All" else v for v in values)


def substitute_query(
    query: str, test_run: TestRun, resolved: List[ApplicationDashboardVariable]
) -> str:
    """Fill ``$system_under_test``, ``$test_environment`` and resolved variables.

    A placeholder only matches the whole variable name, so ``$region`` does
    not clobber ``$region_name``.
    """
    text = query
    fixed = [
        (SYSTEM_UNDER_TEST, test_run.application),
        (TEST_ENVIRONMENT, test_run.test_environment),
    ]
    for name, value in fixed:
        placeholder = re.compile(r"\$" + re.escape(name) + r"(?!\w)")
        text = placeholder.sub(lambda _m, value=value: value, text)
    for variable in resolved:
        if variable.name in (SYSTEM_UNDER_TEST, TEST_ENVIRONMENT):
            continue
        placeholder = re.compile(r"\$" + re.escape(variable.name) + r"(?!\w)")
        if placeholder.search(text):
            replacement = join_values(variable.values)
            text = placeholder.sub(lambda _m: replacement, text)
    return text

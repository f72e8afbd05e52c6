"""Deterministic identities for generated dashboards.

A generated dashboard's uid is the MD5 hex digest of::

    application + testEnvironment + grafana + templateUid + X

where ``X`` depends on the binding:

- ``removeTemplatingVariables``: every variable name followed by its sorted
  values, in variable order;
- fan-out (``createSeparateDashboardForVariable``): the fan-out variable name
  followed by its sorted values (a fan-out variable set carries exactly one);
- otherwise the empty string.

Read-only bindings reuse the template, so their identity is the template uid.

MD5 is kept so identities produced by earlier releases still resolve. Two
older derivations stay resolvable for the same reason: the legacy scheme
(``legacy_dashboard_uid``) and the shared identity (``shared_dashboard_uid``)
that fan-out instances used before each value got its own uid.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Iterable, List

from .models import (
    ApplicationDashboardVariable,
    AutoConfigDashboard,
    TestRun,
    is_reserved,
)

logger = logging.getLogger(__name__)


def _md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def _base(test_run: TestRun, binding: AutoConfigDashboard) -> str:
    return (
        f"{test_run.application}{test_run.test_environment}"
        f"{binding.grafana}{binding.dashboard_uid}"
    )


def flatten_variables(
    variables: Iterable[ApplicationDashboardVariable], *, sort_values: bool
) -> str:
    """Concatenate each variable's name and values into one string."""
    parts: List[str] = []
    for variable in variables:
        parts.append(variable.name)
        values = sorted(variable.values) if sort_values else list(variable.values)
        parts.extend(values)
    return "".join(parts)


def derive_dashboard_uid(
    test_run: TestRun,
    binding: AutoConfigDashboard,
    variables: List[ApplicationDashboardVariable],
) -> str:
    """Return the current-scheme identity for one variable set.

    Parameters
    ----------
    test_run: TestRun
        Run that triggered provisioning.
    binding: AutoConfigDashboard
        Binding being instantiated.
    variables: List[ApplicationDashboardVariable]
        The variable set being processed (after partitioning).

    Returns
    -------
    str
        Template uid for read-only bindings, otherwise a 32 character MD5
        hex digest.
    """
    if binding.read_only:
        return binding.dashboard_uid

    suffix = ""
    if binding.remove_templating_variables:
        suffix = flatten_variables(variables, sort_values=True)
    elif binding.fan_out_variable:
        suffix = flatten_variables(
            [v for v in variables if v.name == binding.fan_out_variable],
            sort_values=True,
        )
    uid = _md5(_base(test_run, binding) + suffix)
    logger.debug(
        "identity.derived",
        extra={"binding": binding.dashboard_name, "uid": uid},
    )
    return uid


def shared_dashboard_uid(test_run: TestRun, binding: AutoConfigDashboard) -> str:
    """Identity without any variable component (or the template uid if read-only)."""
    if binding.read_only:
        return binding.dashboard_uid
    return _md5(_base(test_run, binding))


def legacy_dashboard_uid(
    test_run: TestRun,
    binding: AutoConfigDashboard,
    variables: List[ApplicationDashboardVariable],
) -> str:
    """Identity under the legacy scheme.

    Hardcoded variables are dropped, only the fan-out and reserved variables
    are kept, and values are folded in unsorted.
    """
    hardcoded = {h.name for h in binding.set_hardcoded_value_for_variables}
    kept = [
        v
        for v in variables
        if v.name not in hardcoded
        and (v.name == binding.fan_out_variable or is_reserved(v.name))
    ]
    return _md5(_base(test_run, binding) + flatten_variables(kept, sort_values=False))


def candidate_dashboard_uids(
    test_run: TestRun,
    binding: AutoConfigDashboard,
    variables: List[ApplicationDashboardVariable],
) -> List[str]:
    """Identities to look up, most current first and without duplicates.

    Read-only bindings only ever resolve to the template uid. For the rest the
    current identity comes first, then the legacy one, then (fan-out only)
    the shared identity.
    """
    current = derive_dashboard_uid(test_run, binding, variables)
    if binding.read_only:
        return [current]
    candidates = [current, legacy_dashboard_uid(test_run, binding, variables)]
    if binding.fan_out_variable:
        candidates.append(shared_dashboard_uid(test_run, binding))
    unique: List[str] = []
    for uid in candidates:
        if uid not in unique:
            unique.append(uid)
    return unique

"""
Reentrancy checks.

All three checks consume the ordering facts of the Fact Index: for every
state write, whether an external call was already made in the same function.

Calls through `send`/`transfer` forward a 2300 gas stipend and cannot re-enter,
so they do not open a reentrancy window.
"""

from typing import List, Tuple

from analysis.call_graph import ExternalCallSite
from analysis.state_access import StateWrite
from model.ir import CallKind, Function
from rules.eval_context import DetectorContext
from rules.ir import Confidence, RawFinding, Severity
from semantic.helpers import line_of


def _reentrant_call(site: ExternalCallSite) -> bool:
    return not (site.kind == CallKind.LOW_LEVEL and site.member in ("send", "transfer"))


def _helper_writes(ctx: DetectorContext, function: Function) -> List[StateWrite]:
    """Writes made by internal callees invoked after an external call, placed at the call site."""
    writes = []
    for site in ctx.index.internal_calls_of(function.id):
        if not site.after_external_call:
            continue
        for var_id in ctx.index.transitive_writes.get(site.callee_id, ()):
            writes.append(StateWrite(var_id, site.node_id, site.span, True, site.calls_before))
    return writes


def unsafe_writes(ctx: DetectorContext, function: Function) -> List[Tuple[StateWrite, ExternalCallSite]]:
    """
    (write, first re-entrant call before it) for every write made after such a call.

    A write done inside an internal helper called after the external call
    counts as a write at that helper's call site.
    """
    if ctx.index.has_reentrancy_guard(function.id):
        return []
    calls = ctx.index.external_calls_of(function.id)
    result = []
    seen = set()
    for write in list(ctx.index.writes_after_external_call(function.id)) + _helper_writes(ctx, function):
        if (write.var_id, write.node_id) in seen:
            continue
        seen.add((write.var_id, write.node_id))
        prior = [c for c in calls[: write.calls_before] if _reentrant_call(c)]
        if prior:
            result.append((write, prior[0]))
    return result


def check_classic_reentrancy(ctx: DetectorContext) -> List[RawFinding]:
    """State written after an external call that can re-enter the function."""
    findings = []
    for function in ctx.public_functions():
        if function.is_view:
            continue
        for write, call in unsafe_writes(ctx, function):
            var = ctx.state_variable(write.var_id)
            findings.append(
                ctx.report(
                    Severity.CRITICAL,
                    f"`{var.name}` is updated after the external call `{call.target}.{call.member}` "
                    f"({line_of(call.span)}); the callee can re-enter `{function.name}` before the update",
                    function=function,
                    span=write.span,
                    evidence=(
                        f"external call `{call.target}.{call.member}` at {line_of(call.span)}",
                        f"state variable `{var.name}` written after the call",
                        "no reentrancy guard",
                    ),
                )
            )
    return findings


def check_cross_function_reentrancy(ctx: DetectorContext) -> List[RawFinding]:
    """State updated after a call is used by another public function that can be entered meanwhile."""
    findings = []
    public = [f for f in ctx.public_functions() if not f.is_view]
    for function in public:
        for write, call in unsafe_writes(ctx, function):
            var = ctx.state_variable(write.var_id)
            others = [
                g.name
                for g in public
                if g.id != function.id
                and not ctx.index.has_reentrancy_guard(g.id)
                and var.id in ctx.index.access(g.id).reads + ctx.index.access(g.id).writes
            ]
            if not others:
                continue
            findings.append(
                ctx.report(
                    Severity.MEDIUM,
                    f"during `{call.target}.{call.member}` in `{function.name}`, "
                    f"{', '.join(f'`{n}`' for n in others)} can run against stale `{var.name}`",
                    function=function,
                    span=write.span,
                    evidence=(f"`{var.name}` written after external call", f"also used by {', '.join(others)}"),
                    confidence=Confidence.POSSIBLE,
                )
            )
    return findings


def check_read_only_reentrancy(ctx: DetectorContext) -> List[RawFinding]:
    """View function exposes state that is stale while an external call is in flight."""
    stale = {}
    for function in ctx.public_functions():
        if function.is_view:
            continue
        for write, call in unsafe_writes(ctx, function):
            stale.setdefault(write.var_id, (function, call))

    findings = []
    for view in ctx.public_functions():
        if not view.is_view:
            continue
        for var_id in ctx.index.access(view.id).reads:
            if var_id not in stale:
                continue
            writer, call = stale[var_id]
            var = ctx.state_variable(var_id)
            findings.append(
                ctx.report(
                    Severity.MEDIUM,
                    f"view `{view.name}` reads `{var.name}`, which `{writer.name}` updates only after "
                    f"calling `{call.target}.{call.member}`; integrators can read an inconsistent value",
                    function=view,
                    evidence=(f"`{var.name}` written after external call in `{writer.name}`", "read by a view function"),
                    confidence=Confidence.POSSIBLE,
                )
            )
    return findings

"""
Low-level call and proxy/upgrade checks.

Contains checks for:
- dangerous-delegatecall, arbitrary-external-call, unchecked-low-level-call
- upgradeable-proxy-issues, proxy-storage-collision, missing-storage-gap
- state-variable-shadowing
"""

import re
from typing import List, Optional

from model.ir import Call, CallKind, Expr, Function, Identifier, Return, TupleExpr, VarDecl
from rules.eval_context import DetectorContext
from rules.ir import Confidence, RawFinding, Severity
from semantic.helpers import (
    body_nodes,
    condition_names,
    function_calls,
    is_caller_controlled,
    is_discarded,
    is_proxy_like,
    is_upgradeable,
    line_of,
)

UPGRADE_RE = re.compile(r"^(upgradeTo|upgradeToAndCall|setImplementation|_setImplementation|upgrade)$")
GAP_RE = re.compile(r"^_{1,2}gap$")
LOW_LEVEL_RESULT_CALLS = {"call", "delegatecall", "staticcall", "callcode", "send"}


def _delegatecalls(function: Function) -> List[Call]:
    return [c for c in function_calls(function) if c.kind == CallKind.LOW_LEVEL and c.name in ("delegatecall", "callcode")]


def _data_arg(call: Call) -> Optional[Expr]:
    return call.args[0] if call.args else None


def check_dangerous_delegatecall(ctx: DetectorContext) -> List[RawFinding]:
    """delegatecall whose target or payload the caller controls."""
    findings = []
    for function in ctx.public_functions():
        for call in _delegatecalls(function):
            guarded = ctx.index.has_access_control(function.id)
            target_ctl = is_caller_controlled(call.receiver, function)
            data_ctl = is_caller_controlled(_data_arg(call), function)
            if not (target_ctl or (data_ctl and not guarded and not is_proxy_like(ctx))):
                continue
            evidence = ["delegatecall runs foreign code against this contract's storage"]
            if target_ctl:
                evidence.append("delegatecall target comes from a caller-supplied parameter")
            if data_ctl:
                evidence.append("delegatecall payload comes from caller-supplied data")
            if not guarded:
                evidence.append(f"`{function.name}` has no access control")
            findings.append(
                ctx.report(
                    Severity.CRITICAL,
                    f"`{function.name}` delegatecalls caller-chosen code; it can overwrite any storage slot or selfdestruct",
                    function=function,
                    span=call.span,
                    evidence=evidence,
                    confidence=Confidence.POSSIBLE if guarded else Confidence.LIKELY,
                )
            )
    return findings


def check_arbitrary_external_call(ctx: DetectorContext) -> List[RawFinding]:
    """Unguarded call where both target and calldata come from the caller."""
    findings = []
    for function in ctx.public_functions():
        if ctx.index.has_access_control(function.id):
            continue
        for call in function_calls(function):
            if call.kind != CallKind.LOW_LEVEL or call.name != "call":
                continue
            if not is_caller_controlled(call.receiver, function) or not is_caller_controlled(_data_arg(call), function):
                continue
            findings.append(
                ctx.report(
                    Severity.CRITICAL,
                    f"`{function.name}` performs an arbitrary call; approvals granted to this contract can be drained",
                    function=function,
                    span=call.span,
                    evidence=(
                        "call target from a caller-supplied parameter",
                        "calldata from a caller-supplied parameter",
                        f"`{function.name}` has no access control",
                    ),
                )
            )
    return findings


def _result_names(ctx: DetectorContext, call: Call) -> Optional[List[str]]:
    """Names bound to the call result, [] when discarded, None when used inline."""
    parent = ctx.program.parent_of(call.id)
    if is_discarded(ctx.program, call):
        return []
    if isinstance(parent, VarDecl) and parent.value is call:
        return [n for n in parent.names[:1] if n]
    if isinstance(parent, TupleExpr):
        grand = ctx.program.parent_of(parent.id)
        if isinstance(grand, VarDecl):
            return [n for n in grand.names[:1] if n]
    if getattr(parent, "value", None) is call and isinstance(getattr(parent, "target", None), (Identifier, TupleExpr)):
        target = parent.target  # type: ignore[union-attr]
        if isinstance(target, Identifier):
            return [target.name]
        first = target.components[0] if target.components else None
        return [first.name] if isinstance(first, Identifier) else []
    return None


def check_unchecked_low_level_call(ctx: DetectorContext) -> List[RawFinding]:
    """Low-level call whose success flag is never checked."""
    findings = []
    for function in ctx.functions():
        checked = condition_names(function)
        returned = set()
        for node in body_nodes(function):
            if isinstance(node, Return) and isinstance(node.value, Identifier):
                returned.add(node.value.name)
            elif isinstance(node, Return) and isinstance(node.value, TupleExpr):
                returned.update(c.name for c in node.value.components if isinstance(c, Identifier))
        for call in function_calls(function):
            if call.kind != CallKind.LOW_LEVEL or call.name not in LOW_LEVEL_RESULT_CALLS:
                continue
            names = _result_names(ctx, call)
            if names is None or any(n in checked or n in returned for n in names):
                continue
            findings.append(
                ctx.report(
                    Severity.MEDIUM,
                    f"success flag of `{call.name}` is not checked; a failed call is silently ignored",
                    function=function,
                    span=call.span,
                    evidence=(f"`{call.name}` result discarded or never tested",),
                )
            )
    return findings


def check_upgradeable_proxy_issues(ctx: DetectorContext) -> List[RawFinding]:
    """Upgrade paths anyone can use."""
    findings = []
    for function in ctx.public_functions():
        guarded = ctx.index.has_access_control(function.id)
        for call in _delegatecalls(function):
            if not is_caller_controlled(call.receiver, function):
                continue
            findings.append(
                ctx.report(
                    Severity.HIGH,
                    f"`{function.name}` delegatecalls an implementation supplied by the caller",
                    function=function,
                    span=call.span,
                    evidence=("implementation address is not a fixed storage slot",),
                )
            )
        if UPGRADE_RE.match(function.name) and not guarded:
            findings.append(
                ctx.report(
                    Severity.HIGH,
                    f"`{function.name}` lets anyone replace the implementation",
                    function=function,
                    evidence=("upgrade entry point without access control",),
                )
            )
    for function in ctx.functions():
        if function.name == "_authorizeUpgrade" and function.body is not None and not function.body.stmts:
            if function.modifiers and ctx.index.has_access_control(function.id):
                continue
            findings.append(
                ctx.report(
                    Severity.HIGH,
                    "`_authorizeUpgrade` is empty; any account can upgrade this UUPS implementation",
                    function=function,
                    evidence=("empty upgrade authorization hook",),
                    confidence=Confidence.CERTAIN,
                )
            )
    return findings


def check_proxy_storage_collision(ctx: DetectorContext) -> List[RawFinding]:
    """Proxy keeps its own variables in sequential slots the implementation also uses."""
    if not is_proxy_like(ctx):
        return []
    findings = []
    own = {v.id for v in ctx.state_variables()}
    for slot in ctx.index.storage_layout.get(ctx.contract.id, ()):
        if slot.var_id not in own:
            continue
        var = ctx.state_variable(slot.var_id)
        findings.append(
            ctx.report(
                Severity.MEDIUM,
                f"proxy variable `{var.name}` occupies slot {slot.slot}, which the implementation's own layout also uses",
                span=var.span,
                evidence=(f"slot {slot.slot} offset {slot.offset}", "not an EIP-1967 pseudo-random slot"),
            )
        )
    return findings


def check_missing_storage_gap(ctx: DetectorContext) -> List[RawFinding]:
    """Upgradeable base contract with state but no __gap reserve."""
    contract = ctx.contract
    if contract.is_interface or contract.is_library or not is_upgradeable(ctx):
        return []
    inherited = any(contract.name in other.bases for other in ctx.program.contracts if other.id != contract.id)
    if not inherited:
        return []
    variables = [v for v in ctx.state_variables() if v.in_storage]
    if not variables or any(GAP_RE.match(v.name) for v in variables):
        return []
    return [
        ctx.report(
            Severity.LOW,
            f"upgradeable base `{contract.name}` has no `__gap`; adding a variable later shifts every child's storage",
            evidence=(f"{len(variables)} storage variable(s), no gap array",),
        )
    ]


def check_state_variable_shadowing(ctx: DetectorContext) -> List[RawFinding]:
    """State variable redeclared in a derived contract."""
    findings = []
    for derived_id, base_id in ctx.index.shadowing.get(ctx.contract.id, ()):
        derived = ctx.state_variable(derived_id)
        base = ctx.state_variable(base_id)
        base_contract = ctx.program.contract(base.contract_id)
        findings.append(
            ctx.report(
                Severity.MEDIUM,
                f"`{derived.name}` shadows `{base_contract.name}.{base.name}` ({line_of(base.span)}); "
                f"base functions keep using the hidden variable",
                span=derived.span,
                evidence=(f"same name as a state variable of {base_contract.name}",),
                confidence=Confidence.CERTAIN,
            )
        )
    return findings

"""
Access control checks.

Contains checks for:
- missing-access-modifiers, tx-origin-authentication
- unprotected-initializer, unprotected-selfdestruct
- single-step-ownership-transfer, missing-zero-address-check
"""

import re
from typing import List

from analysis.guards import condition_exprs, is_msg_sender, is_tx_origin
from model.ir import Assignment, BinaryOp, Function, Identifier, walk
from rules.eval_context import DetectorContext
from rules.ir import Confidence, Location, RawFinding, Severity
from semantic.helpers import (
    body_nodes,
    condition_names,
    function_calls,
    privileged_writes,
    PRIVILEGED_NAME_RE,
)

INIT_NAME_RE = re.compile(r"^_?init(ialize)?([A-Z_]\w*)?$")
INITIALIZED_FLAG_RE = re.compile(r"initiali[sz]ed|inited|initializing", re.IGNORECASE)
OWNERSHIP_SETTER_RE = re.compile(r"^(transferOwnership|setOwner|changeOwner|setAdmin|changeAdmin|transferAdmin|setGovernance)$")
PENDING_RE = re.compile(r"pending|nominated|proposed|candidate", re.IGNORECASE)
SELFDESTRUCT_NAMES = {"selfdestruct", "suicide"}


def _is_initializer(function: Function) -> bool:
    return not function.is_constructor and bool(INIT_NAME_RE.match(function.name))


def check_missing_access_modifiers(ctx: DetectorContext) -> List[RawFinding]:
    """Public state-changing function writes privileged state with no guard."""
    findings = []
    for function in ctx.public_functions():
        if function.is_view or function.is_constructor or _is_initializer(function):
            continue
        if ctx.index.has_access_control(function.id):
            continue
        written = privileged_writes(ctx, function)
        if not written:
            continue
        names = ", ".join(f"`{v.name}`" for v in written)
        findings.append(
            ctx.report(
                Severity.CRITICAL,
                f"`{function.name}` is callable by anyone and writes privileged state {names}",
                function=function,
                evidence=(
                    f"{function.visibility} function without access-control modifier or msg.sender check",
                    f"writes privileged state variable(s) {names}",
                ),
            )
        )
    return findings


def check_tx_origin_authentication(ctx: DetectorContext) -> List[RawFinding]:
    """Authorization compares tx.origin instead of msg.sender."""
    findings = []
    bodies = [(f.name, f.body) for f in ctx.functions()]
    bodies += [(m.name, m.body) for m in ctx.program.modifiers_of(ctx.contract)]
    for member, body in bodies:
        for cond in condition_exprs(body):
            for node in walk(cond):
                if not isinstance(node, BinaryOp) or node.op not in ("==", "!="):
                    continue
                origin = is_tx_origin(node.left) or is_tx_origin(node.right)
                sender = is_msg_sender(node.left) or is_msg_sender(node.right)
                if origin and not sender:
                    findings.append(
                        RawFinding(
                            severity=Severity.HIGH,
                            location=Location(ctx.contract.name, member, node.span),
                            message=f"`{member}` authenticates with tx.origin; any contract the owner calls can act as the owner",
                            confidence=Confidence.CERTAIN,
                            evidence=("tx.origin compared in an authorization condition",),
                        )
                    )
    return findings


def check_unprotected_initializer(ctx: DetectorContext) -> List[RawFinding]:
    """Public initializer callable by anyone, and callable more than once."""
    findings = []
    for function in ctx.public_functions():
        if not _is_initializer(function):
            continue
        if any(name in ("initializer", "reinitializer", "onlyInitializing") for name in function.modifier_names()):
            continue
        if ctx.index.has_access_control(function.id):
            continue
        if any(INITIALIZED_FLAG_RE.search(name) for name in condition_names(function)):
            continue
        evidence = [
            "public initializer without access control",
            "no initialized-flag check: can be called again to reset state",
        ]
        written = privileged_writes(ctx, function)
        if written:
            evidence.append("sets privileged state " + ", ".join(f"`{v.name}`" for v in written))
        findings.append(
            ctx.report(
                Severity.CRITICAL,
                f"`{function.name}` can be called by anyone, any number of times",
                function=function,
                evidence=evidence,
            )
        )
    return findings


def check_unprotected_selfdestruct(ctx: DetectorContext) -> List[RawFinding]:
    """selfdestruct reachable from an unguarded public function."""
    findings = []
    for function in ctx.public_functions():
        if ctx.index.has_access_control(function.id):
            continue
        reachable = [function] + [ctx.program.functions[c] for c in ctx.index.transitive_callees(function.id)]
        for target in reachable:
            sites = [c for c in function_calls(target) if c.name in SELFDESTRUCT_NAMES]
            if not sites:
                continue
            via = "" if target is function else f" via `{target.name}`"
            findings.append(
                ctx.report(
                    Severity.CRITICAL,
                    f"anyone can destroy the contract through `{function.name}`{via}",
                    function=function,
                    span=sites[0].span if target is function else function.span,
                    evidence=(f"reaches {sites[0].name}{via}", "no access control on the entry point"),
                    confidence=Confidence.CERTAIN,
                )
            )
            break
    return findings


def check_single_step_ownership_transfer(ctx: DetectorContext) -> List[RawFinding]:
    """Owner replaced in one step: a typo locks the contract forever."""
    if any(PENDING_RE.search(v.name) for v in ctx.visible_state_variables()):
        return []
    findings = []
    for function in ctx.public_functions():
        if not OWNERSHIP_SETTER_RE.match(function.name):
            continue
        params = {p.name for p in function.parameters if p.name}
        for node in body_nodes(function):
            if not isinstance(node, Assignment) or not isinstance(node.value, Identifier):
                continue
            if node.value.name not in params or not isinstance(node.target, Identifier):
                continue
            var = ctx.resolve_state_var(node.target.name)
            if var is not None and PRIVILEGED_NAME_RE.search(var.name):
                findings.append(
                    ctx.report(
                        Severity.LOW,
                        f"`{function.name}` hands `{var.name}` over in a single step without acceptance by the new owner",
                        function=function,
                        evidence=(f"`{var.name}` assigned directly from parameter `{node.value.name}`",),
                    )
                )
                break
    return findings


def check_missing_zero_address_check(ctx: DetectorContext) -> List[RawFinding]:
    """Address parameter stored in state without a zero-address check."""
    findings = []
    for function in ctx.public_functions():
        address_params = {p.name for p in function.parameters if p.name and p.type_name.startswith("address")}
        if not address_params:
            continue
        checked = condition_names(function)
        for node in body_nodes(function):
            if not isinstance(node, Assignment) or not isinstance(node.value, Identifier):
                continue
            name = node.value.name
            if name not in address_params or name in checked or not isinstance(node.target, Identifier):
                continue
            var = ctx.resolve_state_var(node.target.name)
            if var is None:
                continue
            findings.append(
                ctx.report(
                    Severity.LOW,
                    f"`{var.name}` set from `{name}` without checking for address(0)",
                    function=function,
                    span=node.span,
                    evidence=(f"parameter `{name}` never appears in a condition",),
                    confidence=Confidence.POSSIBLE,
                )
            )
    return findings

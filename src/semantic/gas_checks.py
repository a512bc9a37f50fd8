"""
Gas griefing and denial-of-service checks.

Contains checks for:
- unbounded-loop: loop bounded by the length of a growable storage array
- external-call-in-loop: one reverting callee blocks the whole loop
- locked-ether: payable contract with no way to move ether out
"""

from typing import List, Optional

from model.ir import Call, CallKind, Function, Loop, MemberAccess, StateVariable, root_identifier, walk
from rules.eval_context import DetectorContext
from rules.ir import Confidence, RawFinding, Severity
from semantic.helpers import body_nodes, function_calls, in_loop, line_of

SELFDESTRUCT_NAMES = {"selfdestruct", "suicide"}


def _length_source(ctx: DetectorContext, loop: Loop) -> Optional[StateVariable]:
    """Storage array whose `.length` bounds the loop, if any."""
    if loop.condition is None:
        return None
    for node in walk(loop.condition):
        if not isinstance(node, MemberAccess) or node.member != "length":
            continue
        ident = root_identifier(node.base)
        if ident is None:
            continue
        var = ctx.resolve_state_var(ident.name)
        if var is not None and var.in_storage and "[" in var.type_name:
            return var
    return None


def _grows(ctx: DetectorContext, var: StateVariable) -> bool:
    """Some externally reachable function pushes onto the array."""
    for function in ctx.resolved_functions():
        if not function.is_public:
            continue
        for fid in (function.id,) + tuple(ctx.index.transitive_callees(function.id)):
            callee = ctx.program.functions[fid]
            for call in function_calls(callee):
                if call.name != "push" or call.receiver is None:
                    continue
                ident = root_identifier(call.receiver)
                if ident is not None and ident.name == var.name:
                    return True
    return False


def check_unbounded_loop(ctx: DetectorContext) -> List[RawFinding]:
    """Public function iterates over a storage array that anyone can grow."""
    findings = []
    for function in ctx.public_functions():
        for node in body_nodes(function):
            if not isinstance(node, Loop):
                continue
            var = _length_source(ctx, node)
            if var is None:
                continue
            evidence = [f"loop bound is `{var.name}.length`, a storage array"]
            grows = _grows(ctx, var)
            if grows:
                evidence.append(f"`{var.name}` is appended to by an external entry point")
            findings.append(
                ctx.report(
                    Severity.MEDIUM,
                    f"loop in `{function.name}` iterates over all of `{var.name}`; "
                    f"once it is large enough the call runs out of gas",
                    function=function,
                    span=node.span,
                    evidence=evidence,
                    confidence=Confidence.LIKELY if grows else Confidence.POSSIBLE,
                )
            )
    return findings


def check_external_call_in_loop(ctx: DetectorContext) -> List[RawFinding]:
    """External call inside a loop: a single failing callee reverts every iteration."""
    findings = []
    for function in ctx.functions():
        for call in function_calls(function):
            if not call.kind.leaves_contract or not in_loop(ctx.program, call.id):
                continue
            findings.append(
                ctx.report(
                    Severity.MEDIUM,
                    f"`{call.name}` is called inside a loop in `{function.name}`; "
                    f"one reverting or gas-hungry recipient blocks the whole operation",
                    function=function,
                    span=call.span,
                    evidence=(f"external call `{call.name}` inside a loop",),
                    confidence=Confidence.POSSIBLE,
                )
            )
    return findings


def _receives_ether(function: Function) -> bool:
    return function.is_payable or function.kind == "receive"


def _sends_ether(call: Call) -> bool:
    if call.transfers_value:
        return True
    if call.kind == CallKind.BUILTIN and call.name in SELFDESTRUCT_NAMES:
        return True
    # `addr.call{value: x}("")` and bare `addr.call(...)` forwarding msg.value
    return call.kind == CallKind.LOW_LEVEL and call.name == "call"


def check_locked_ether(ctx: DetectorContext) -> List[RawFinding]:
    """Contract accepts ether but no function can send it anywhere."""
    contract = ctx.contract
    if contract.is_interface or contract.is_library or contract.kind == "abstract":
        return []
    functions = ctx.resolved_functions() or ctx.functions()
    payable = [f for f in functions if _receives_ether(f) and not f.is_constructor]
    if not payable:
        return []
    for function in functions:
        if any(_sends_ether(c) for c in function_calls(function)):
            return []
        # delegatecall to other code may move funds
        if any(c.name == "delegatecall" for c in function_calls(function)):
            return []
    first = payable[0]
    names = ", ".join(f"`{f.name or f.kind}`" for f in payable)
    return [
        ctx.report(
            Severity.MEDIUM,
            f"`{contract.name}` accepts ether through {names} but has no way to withdraw it",
            evidence=(f"payable entry point at {line_of(first.span)}", "no transfer, send, call or selfdestruct"),
        )
    ]

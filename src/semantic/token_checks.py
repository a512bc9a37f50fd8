"""
Token standard checks (ERC-20 / ERC-721 / ERC-1155).

Contains checks for:
- erc721-callback-reentrancy: state written after a safe transfer/mint hook
- unchecked-erc20-transfer: transfer/transferFrom/approve result ignored
- approve-race-condition: approve() overwrites a non-zero allowance
"""

from typing import List

from model.ir import CallKind, Function
from rules.eval_context import DetectorContext
from rules.ir import Confidence, RawFinding, Severity
from semantic.helpers import function_calls, is_discarded, line_of

# Calls that invoke onERC721Received / onERC1155Received on the recipient
RECEIVER_HOOK_CALLS = {
    "_safeMint",
    "safeMint",
    "_safeTransfer",
    "safeTransferFrom",
    "safeBatchTransferFrom",
    "_safeBatchTransferFrom",
    "_mintBatch",
    "onERC721Received",
    "onERC1155Received",
}
ERC20_BOOL_CALLS = {"transfer": 2, "transferFrom": 3, "approve": 2}


def check_erc721_callback_reentrancy(ctx: DetectorContext) -> List[RawFinding]:
    """State written after a call that runs the recipient's receiver hook."""
    findings = []
    for function in ctx.public_functions():
        if ctx.index.has_reentrancy_guard(function.id):
            continue
        hooks = [c for c in function_calls(function) if c.name in RECEIVER_HOOK_CALLS]
        if not hooks:
            continue
        first = min(hooks, key=lambda c: c.id)
        for write in ctx.index.access(function.id).write_sites:
            # node ids follow document order
            if write.node_id <= first.id:
                continue
            var = ctx.state_variable(write.var_id)
            findings.append(
                ctx.report(
                    Severity.HIGH,
                    f"`{var.name}` is updated after `{first.name}` ({line_of(first.span)}), "
                    f"which calls back into the recipient",
                    function=function,
                    span=write.span,
                    evidence=(f"receiver hook via `{first.name}`", f"`{var.name}` written afterwards"),
                )
            )
    return findings


def check_unchecked_erc20_transfer(ctx: DetectorContext) -> List[RawFinding]:
    """ERC-20 call whose boolean result is discarded."""
    findings = []
    for function in ctx.functions():
        for call in function_calls(function):
            if call.kind != CallKind.EXTERNAL or ERC20_BOOL_CALLS.get(call.name) != len(call.args):
                continue
            if not is_discarded(ctx.program, call):
                continue
            findings.append(
                ctx.report(
                    Severity.MEDIUM,
                    f"return value of `{call.name}` is ignored; tokens that return false on failure go unnoticed",
                    function=function,
                    span=call.span,
                    evidence=("ERC-20 call used as a statement",),
                )
            )
    return findings


def _writes_allowance(ctx: DetectorContext, function: Function) -> bool:
    return any("allow" in ctx.state_variable(v).name.lower() for v in ctx.index.access(function.id).writes)


def check_approve_race_condition(ctx: DetectorContext) -> List[RawFinding]:
    """approve() sets a new allowance without requiring the old one to be zero."""
    names = {f.name for f in ctx.resolved_functions()}
    if "increaseAllowance" in names or "decreaseAllowance" in names:
        return []
    findings = []
    for function in ctx.public_functions():
        if function.name != "approve" or len(function.parameters) != 2:
            continue
        if not _writes_allowance(ctx, function):
            continue
        findings.append(
            ctx.report(
                Severity.LOW,
                "approve() overwrites the allowance; a spender can front-run the change and spend both amounts",
                function=function,
                evidence=("no increaseAllowance/decreaseAllowance alternative",),
                confidence=Confidence.POSSIBLE,
            )
        )
    return findings

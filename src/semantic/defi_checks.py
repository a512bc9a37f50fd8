"""
DeFi checks: price oracles and AMM interactions.

Contains checks for:
- spot-price-oracle, stale-oracle-price
- missing-slippage-protection, missing-swap-deadline
- balance-donation-manipulation
"""

from typing import List, Optional

from model.ir import BinaryOp, Call, CallKind, Expr, Function, MemberAccess, VarDecl, walk
from rules.eval_context import DetectorContext
from rules.ir import Confidence, RawFinding, Severity
from semantic.helpers import (
    body_nodes,
    condition_names,
    function_calls,
    is_block_member,
    is_literal_zero,
    is_this_balance,
)

SPOT_PRICE_CALLS = {"getReserves", "slot0", "getAmountsOut", "getAmountOut", "getAmountsIn", "get_dy", "getSpotPrice"}

# Router call -> positions of minimum-output arguments
MIN_OUTPUT_ARGS = {
    "swapExactTokensForTokens": (1,),
    "swapExactTokensForETH": (1,),
    "swapExactETHForTokens": (0,),
    "swapExactTokensForTokensSupportingFeeOnTransferTokens": (1,),
    "swapExactTokensForETHSupportingFeeOnTransferTokens": (1,),
    "swapExactETHForTokensSupportingFeeOnTransferTokens": (0,),
    "addLiquidity": (4, 5),
    "addLiquidityETH": (2, 3),
    "removeLiquidity": (3, 4),
    "removeLiquidityETH": (2, 3),
    "exchange": (3,),
}
# Router call -> position of the deadline argument
DEADLINE_ARGS = {
    "swapExactTokensForTokens": 4,
    "swapTokensForExactTokens": 4,
    "swapExactTokensForETH": 4,
    "swapExactETHForTokens": 3,
    "swapExactTokensForTokensSupportingFeeOnTransferTokens": 4,
    "swapExactTokensForETHSupportingFeeOnTransferTokens": 4,
    "swapExactETHForTokensSupportingFeeOnTransferTokens": 3,
    "addLiquidity": 7,
    "addLiquidityETH": 5,
    "removeLiquidity": 6,
    "removeLiquidityETH": 5,
}


def _external(call: Call) -> bool:
    return call.kind in (CallKind.EXTERNAL, CallKind.LOW_LEVEL)


def check_spot_price_oracle(ctx: DetectorContext) -> List[RawFinding]:
    """Price derived from instantaneous AMM reserves, manipulable with a flash loan."""
    findings = []
    for function in ctx.functions():
        for call in function_calls(function):
            if not _external(call) or call.name not in SPOT_PRICE_CALLS:
                continue
            findings.append(
                ctx.report(
                    Severity.HIGH,
                    f"`{call.name}` reads the pool's spot state; a flash loan can move it within one transaction",
                    function=function,
                    span=call.span,
                    evidence=(f"spot price source `{call.name}`",),
                )
            )
    return findings


def _latest_round_decl(function: Function, call: Call) -> Optional[VarDecl]:
    parent = None
    for node in body_nodes(function):
        if isinstance(node, VarDecl) and node.value is call:
            parent = node
    return parent


def check_stale_oracle_price(ctx: DetectorContext) -> List[RawFinding]:
    """Chainlink answer used without checking its freshness."""
    findings = []
    for function in ctx.functions():
        checked = condition_names(function)
        for call in function_calls(function):
            if not _external(call):
                continue
            if call.name == "latestAnswer":
                findings.append(
                    ctx.report(
                        Severity.MEDIUM,
                        "`latestAnswer` is deprecated and carries no timestamp to check staleness",
                        function=function,
                        span=call.span,
                        evidence=("deprecated oracle getter",),
                    )
                )
                continue
            if call.name != "latestRoundData":
                continue
            decl = _latest_round_decl(function, call)
            updated_at = decl.names[3] if decl is not None and len(decl.names) > 3 else None
            if updated_at and updated_at in checked:
                continue
            findings.append(
                ctx.report(
                    Severity.MEDIUM,
                    "`latestRoundData` result is used without checking `updatedAt` against a staleness threshold",
                    function=function,
                    span=call.span,
                    evidence=("updatedAt not validated",),
                )
            )
    return findings


def check_missing_slippage_protection(ctx: DetectorContext) -> List[RawFinding]:
    """Swap or liquidity call with a zero minimum output."""
    findings = []
    for function in ctx.functions():
        for call in function_calls(function):
            positions = MIN_OUTPUT_ARGS.get(call.name)
            if not _external(call) or positions is None:
                continue
            zero = [i for i in positions if i < len(call.args) and is_literal_zero(call.args[i])]
            if not zero:
                continue
            findings.append(
                ctx.report(
                    Severity.HIGH,
                    f"`{call.name}` accepts any output amount (minimum set to 0); sandwich attacks can take the whole trade",
                    function=function,
                    span=call.span,
                    evidence=(f"argument {zero[0]} of `{call.name}` is literal 0",),
                    confidence=Confidence.CERTAIN,
                )
            )
    return findings


def _is_unbounded_deadline(expr: Expr) -> bool:
    if is_block_member(expr, {"timestamp"}):
        return True
    # type(uint256).max
    return isinstance(expr, MemberAccess) and expr.member == "max"


def check_missing_swap_deadline(ctx: DetectorContext) -> List[RawFinding]:
    """Router call whose deadline is block.timestamp or the maximum uint."""
    findings = []
    for function in ctx.functions():
        for call in function_calls(function):
            pos = DEADLINE_ARGS.get(call.name)
            if not _external(call) or pos is None or pos >= len(call.args):
                continue
            if not _is_unbounded_deadline(call.args[pos]):
                continue
            findings.append(
                ctx.report(
                    Severity.MEDIUM,
                    f"`{call.name}` deadline never expires; a pending transaction can be executed at a worse price later",
                    function=function,
                    span=call.span,
                    evidence=("deadline is block.timestamp or max uint",),
                )
            )
    return findings


def check_balance_donation_manipulation(ctx: DetectorContext) -> List[RawFinding]:
    """Share/price math on the contract's own balance, inflatable by a direct donation."""
    findings = []
    for function in ctx.functions():
        reported = set()
        for node in body_nodes(function):
            if not isinstance(node, BinaryOp) or node.op not in ("/", "*"):
                continue
            source = next((n for n in walk(node) if is_this_balance(n)), None)
            if source is None or source.id in reported:
                continue
            reported.add(source.id)
            findings.append(
                ctx.report(
                    Severity.MEDIUM,
                    "exchange rate derived from the contract's own balance; a direct transfer inflates it",
                    function=function,
                    span=node.span,
                    evidence=("balance of address(this) used in share arithmetic",),
                    confidence=Confidence.POSSIBLE,
                )
            )
    return findings

"""
Signature verification checks.

Contains checks for:
- signature-replay: recovered signer with no nonce or used-signature tracking
- missing-chainid-in-signature: signed digest not bound to the chain
- ecrecover-zero-address: raw ecrecover result never compared to address(0)
"""

from typing import List, Set

from analysis.guards import condition_exprs
from model.ir import Assignment, BinaryOp, Call, CallKind, Function, Identifier, MemberAccess, VarDecl, walk
from rules.eval_context import DetectorContext
from rules.ir import Confidence, RawFinding, Severity
from semantic.helpers import (
    NONCE_NAME_RE,
    body_nodes,
    condition_names,
    function_calls,
    identifiers_in,
    is_block_member,
    is_zero_address,
)

RECOVER_CALLS = {"ecrecover", "recover", "tryRecover", "isValidSignatureNow", "isValidSignature"}
DOMAIN_NAMES = {"DOMAIN_SEPARATOR", "_domainSeparatorV4", "_hashTypedDataV4", "domainSeparator", "_DOMAIN_SEPARATOR"}
EIP712_BASES = {"EIP712", "EIP712Upgradeable", "ERC20Permit", "ERC20PermitUpgradeable"}


def _recover_calls(function: Function) -> List[Call]:
    return [c for c in function_calls(function) if c.name in RECOVER_CALLS and c.kind != CallKind.EVENT]


def _tracks_nonce(ctx: DetectorContext, function: Function) -> bool:
    touched = set(ctx.index.transitive_writes.get(function.id, ())) | set(ctx.index.access(function.id).reads)
    if any(NONCE_NAME_RE.search(ctx.state_variable(v).name) for v in touched):
        return True
    if any(NONCE_NAME_RE.search(name) for name in condition_names(function)):
        return True
    # nonce passed into the digest
    return any(NONCE_NAME_RE.search(name) for name in identifiers_in(function.body))


def check_signature_replay(ctx: DetectorContext) -> List[RawFinding]:
    """Signature accepted without consuming a nonce or marking it used."""
    findings = []
    for function in ctx.public_functions():
        if function.is_view:
            continue
        calls = _recover_calls(function)
        if not calls or _tracks_nonce(ctx, function):
            continue
        call = calls[0]
        findings.append(
            ctx.report(
                Severity.HIGH,
                f"`{function.name}` verifies a signature but never records it as used; the same signature can be replayed",
                function=function,
                span=call.span,
                evidence=(f"signer recovered with `{call.name}`", "no nonce or used-signature state read or written"),
            )
        )
    return findings


def _binds_chain(ctx: DetectorContext) -> bool:
    if any(b in EIP712_BASES for b in ctx.contract.bases) or any(ctx.inherits_from(b) for b in EIP712_BASES):
        return True
    for function in ctx.resolved_functions():
        for node in body_nodes(function):
            if is_block_member(node, {"chainid"}):
                return True
            if isinstance(node, Identifier) and node.name in DOMAIN_NAMES:
                return True
            if isinstance(node, Call) and node.name in DOMAIN_NAMES:
                return True
    return any(v.name in DOMAIN_NAMES for v in ctx.visible_state_variables())


def check_missing_chainid_in_signature(ctx: DetectorContext) -> List[RawFinding]:
    """Signed digest carries no chain id, so signatures are valid on every fork and chain."""
    if _binds_chain(ctx):
        return []
    findings = []
    for function in ctx.public_functions():
        for call in _recover_calls(function):
            findings.append(
                ctx.report(
                    Severity.MEDIUM,
                    f"signature checked in `{function.name}` is not bound to `block.chainid`; "
                    f"it can be replayed on another chain",
                    function=function,
                    span=call.span,
                    evidence=("no block.chainid, EIP-712 domain separator or EIP712 base",),
                    confidence=Confidence.POSSIBLE,
                )
            )
    return findings


def _bound_names(ctx: DetectorContext, call: Call) -> Set[str]:
    parent = ctx.program.parent_of(call.id)
    if isinstance(parent, VarDecl):
        return {n for n in parent.names if n}
    if isinstance(parent, Assignment) and isinstance(parent.target, Identifier):
        return {parent.target.name}
    return set()


def _zero_checked(function: Function, names: Set[str]) -> bool:
    for cond in condition_exprs(function.body):
        for node in walk(cond):
            if not isinstance(node, BinaryOp) or node.op not in ("==", "!="):
                continue
            for side, other in ((node.left, node.right), (node.right, node.left)):
                if is_zero_address(other) and isinstance(side, Identifier) and side.name in names:
                    return True
    return False


def check_ecrecover_zero_address(ctx: DetectorContext) -> List[RawFinding]:
    """ecrecover returns address(0) for malformed signatures; unchecked it matches an unset signer."""
    findings = []
    for function in ctx.functions():
        for call in function_calls(function):
            if call.name != "ecrecover" or isinstance(call.callee, MemberAccess):
                continue
            if _zero_checked(function, _bound_names(ctx, call)):
                continue
            findings.append(
                ctx.report(
                    Severity.MEDIUM,
                    "`ecrecover` result is not checked against address(0); an invalid signature "
                    "authenticates as an uninitialized signer",
                    function=function,
                    span=call.span,
                    evidence=("raw ecrecover without a zero-address comparison",),
                )
            )
    return findings

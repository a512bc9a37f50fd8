"""
Cross-chain bridge and restaking checks.

Contains checks for:
- unvalidated-cross-chain-message, missing-message-replay-protection
- unprotected-slashing, missing-withdrawal-delay
"""

import re
from typing import List

from analysis.guards import is_msg_sender
from model.ir import Function
from rules.eval_context import DetectorContext
from rules.ir import Confidence, RawFinding, Severity
from semantic.helpers import (
    NONCE_NAME_RE,
    body_nodes,
    condition_names,
    conditions_mention,
    function_calls,
    is_block_member,
)

MESSAGE_HANDLER_RE = re.compile(
    r"^(lzReceive|receiveMessage|handle|anyExecute|executeMessage|ccipReceive|receiveWormholeMessages|"
    r"onMessage|xReceive|sgReceive|processMessage|relayMessage|finalizeDeposit|bridgeReceive)$"
)
SLASH_RE = re.compile(r"^_?slash", re.IGNORECASE)
WITHDRAW_RE = re.compile(r"^(withdraw|completeWithdrawal|completeQueuedWithdrawal|unstake|undelegate|redeem)", re.IGNORECASE)
RESTAKING_RE = re.compile(r"stake|delegat|slash|restak|operator", re.IGNORECASE)
DELAY_NAME_RE = re.compile(r"delay|cooldown|unlock|unbond|withdrawaltime|maturity|epoch|queued", re.IGNORECASE)
VALUE_OUT_CALLS = {"transfer", "safeTransfer", "call", "send", "transferFrom", "safeTransferFrom"}


def _handlers(ctx: DetectorContext) -> List[Function]:
    return [f for f in ctx.public_functions() if MESSAGE_HANDLER_RE.match(f.name)]


def check_unvalidated_cross_chain_message(ctx: DetectorContext) -> List[RawFinding]:
    """Message handler that never checks who delivered the message."""
    findings = []
    for function in _handlers(ctx):
        if ctx.index.has_access_control(function.id):
            continue
        if conditions_mention(function, is_msg_sender):
            continue
        params = {p.name for p in function.parameters if p.name}
        evidence = [
            f"`{function.name}` is an externally callable message handler",
            "msg.sender is never checked against the endpoint or bridge",
        ]
        if not params & condition_names(function):
            evidence.append("source chain and sender parameters are not validated")
        findings.append(
            ctx.report(
                Severity.CRITICAL,
                f"`{function.name}` accepts messages from any caller; forged messages are executed as authentic",
                function=function,
                evidence=evidence,
            )
        )
    return findings


def check_missing_message_replay_protection(ctx: DetectorContext) -> List[RawFinding]:
    """Message handler that does not mark processed messages."""
    findings = []
    for function in _handlers(ctx):
        touched = set(ctx.index.transitive_writes.get(function.id, ())) | set(ctx.index.access(function.id).reads)
        if any(NONCE_NAME_RE.search(ctx.state_variable(v).name) for v in touched):
            continue
        if any(NONCE_NAME_RE.search(name) for name in condition_names(function)):
            continue
        findings.append(
            ctx.report(
                Severity.HIGH,
                f"`{function.name}` keeps no record of processed messages; the same message can be executed twice",
                function=function,
                evidence=("no nonce or processed-message mapping read or written",),
                confidence=Confidence.POSSIBLE,
            )
        )
    return findings


def check_unprotected_slashing(ctx: DetectorContext) -> List[RawFinding]:
    """Anyone can slash stakers."""
    findings = []
    for function in ctx.public_functions():
        if not SLASH_RE.match(function.name) or ctx.index.has_access_control(function.id):
            continue
        written = ctx.index.transitive_writes.get(function.id, ())
        if not written:
            continue
        names = ", ".join(f"`{ctx.state_variable(v).name}`" for v in written)
        findings.append(
            ctx.report(
                Severity.CRITICAL,
                f"`{function.name}` can be called by anyone to slash stake",
                function=function,
                evidence=("public slashing entry point without access control", f"modifies {names}"),
            )
        )
    return findings


def _is_restaking_contract(ctx: DetectorContext) -> bool:
    return any(RESTAKING_RE.search(f.name) for f in ctx.functions())


def check_missing_withdrawal_delay(ctx: DetectorContext) -> List[RawFinding]:
    """Stake can leave immediately, escaping pending slashing."""
    findings = []
    for function in ctx.public_functions():
        if not WITHDRAW_RE.match(function.name):
            continue
        if not any(c.name in VALUE_OUT_CALLS or c.transfers_value for c in function_calls(function)):
            continue
        if conditions_mention(function, lambda n: is_block_member(n, {"timestamp", "number"})):
            continue
        if any(DELAY_NAME_RE.search(name) for name in condition_names(function)):
            continue
        if any(DELAY_NAME_RE.search(getattr(n, "name", "")) for n in body_nodes(function)):
            continue
        findings.append(
            ctx.report(
                Severity.MEDIUM,
                f"`{function.name}` releases stake immediately; misbehaving operators can exit before being slashed",
                function=function,
                evidence=("no timestamp or delay check before funds leave",),
                confidence=Confidence.POSSIBLE,
            )
        )
    return findings


def restaking_applies(ctx: DetectorContext) -> bool:
    return not ctx.contract.is_interface and _is_restaking_contract(ctx)

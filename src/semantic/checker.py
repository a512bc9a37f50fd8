"""
Built-in detector catalogue.

Every built-in detector is declared here as a Detector value wired to its
check function in the semantic/*_checks.py modules. default_registry() builds
a fresh Registry holding all of them in catalogue order; that order is the
tie-breaker the scheduler and aggregator use when ordering findings.
"""

from typing import Tuple

from rules.ir import Category, Detector, Severity, SubsumptionRule
from rules.registry import Registry
from semantic import (
    access_checks,
    arithmetic_checks,
    bridge_checks,
    defi_checks,
    gas_checks,
    proxy_checks,
    reentrancy_checks,
    signature_checks,
    token_checks,
)
from semantic.helpers import has_code


def _detector(id, category, severity, description, evaluate, applies=has_code) -> Detector:
    return Detector(
        id=id,
        category=category,
        severity=severity,
        description=description,
        evaluate=evaluate,
        applies=applies,
    )


# fmt: off
BUILTIN_DETECTORS: Tuple[Detector, ...] = (
    # Access control
    _detector("missing-access-modifiers", Category.ACCESS_CONTROL, Severity.CRITICAL,
              "Public function writes privileged state without any access check",
              access_checks.check_missing_access_modifiers),
    _detector("tx-origin-authentication", Category.ACCESS_CONTROL, Severity.HIGH,
              "Authorization based on tx.origin",
              access_checks.check_tx_origin_authentication),
    _detector("unprotected-initializer", Category.ACCESS_CONTROL, Severity.CRITICAL,
              "Initializer callable by anyone or more than once",
              access_checks.check_unprotected_initializer),
    _detector("unprotected-selfdestruct", Category.ACCESS_CONTROL, Severity.CRITICAL,
              "selfdestruct reachable without access control",
              access_checks.check_unprotected_selfdestruct),
    _detector("single-step-ownership-transfer", Category.ACCESS_CONTROL, Severity.LOW,
              "Ownership handed over in one step without acceptance",
              access_checks.check_single_step_ownership_transfer),
    _detector("missing-zero-address-check", Category.ACCESS_CONTROL, Severity.LOW,
              "Privileged address set without rejecting address(0)",
              access_checks.check_missing_zero_address_check),
    # Reentrancy
    _detector("classic-reentrancy", Category.REENTRANCY, Severity.CRITICAL,
              "State written after an external call that can re-enter",
              reentrancy_checks.check_classic_reentrancy),
    _detector("cross-function-reentrancy", Category.REENTRANCY, Severity.MEDIUM,
              "Another public function sees state that is stale during an external call",
              reentrancy_checks.check_cross_function_reentrancy),
    _detector("read-only-reentrancy", Category.REENTRANCY, Severity.MEDIUM,
              "View function exposes state that is stale during an external call",
              reentrancy_checks.check_read_only_reentrancy),
    # Token standards
    _detector("erc721-callback-reentrancy", Category.TOKEN_STANDARD, Severity.HIGH,
              "State written after a safe transfer/mint receiver hook",
              token_checks.check_erc721_callback_reentrancy),
    _detector("unchecked-erc20-transfer", Category.TOKEN_STANDARD, Severity.MEDIUM,
              "ERC-20 transfer/transferFrom/approve result ignored",
              token_checks.check_unchecked_erc20_transfer),
    _detector("approve-race-condition", Category.TOKEN_STANDARD, Severity.LOW,
              "approve() overwrites a non-zero allowance",
              token_checks.check_approve_race_condition),
    # Oracles and AMMs
    _detector("spot-price-oracle", Category.ORACLE, Severity.HIGH,
              "Price read from instantaneous pool state",
              defi_checks.check_spot_price_oracle),
    _detector("stale-oracle-price", Category.ORACLE, Severity.MEDIUM,
              "Oracle answer used without a freshness check",
              defi_checks.check_stale_oracle_price),
    _detector("missing-slippage-protection", Category.AMM_INVARIANT, Severity.HIGH,
              "Swap or liquidity call with zero minimum output",
              defi_checks.check_missing_slippage_protection),
    _detector("missing-swap-deadline", Category.AMM_INVARIANT, Severity.MEDIUM,
              "Router call whose deadline never expires",
              defi_checks.check_missing_swap_deadline),
    _detector("balance-donation-manipulation", Category.AMM_INVARIANT, Severity.MEDIUM,
              "Exchange rate computed from the contract's own balance",
              defi_checks.check_balance_donation_manipulation),
    # Bridges and restaking
    _detector("unvalidated-cross-chain-message", Category.BRIDGE, Severity.CRITICAL,
              "Message handler does not authenticate the messenger",
              bridge_checks.check_unvalidated_cross_chain_message),
    _detector("missing-message-replay-protection", Category.BRIDGE, Severity.HIGH,
              "Processed messages are not recorded",
              bridge_checks.check_missing_message_replay_protection),
    _detector("unprotected-slashing", Category.RESTAKING, Severity.CRITICAL,
              "Slashing entry point without access control",
              bridge_checks.check_unprotected_slashing,
              applies=bridge_checks.restaking_applies),
    _detector("missing-withdrawal-delay", Category.RESTAKING, Severity.MEDIUM,
              "Stake withdrawn without a delay",
              bridge_checks.check_missing_withdrawal_delay,
              applies=bridge_checks.restaking_applies),
    # Low-level calls and proxies
    _detector("dangerous-delegatecall", Category.LOW_LEVEL_CALL, Severity.CRITICAL,
              "delegatecall to caller-controlled code",
              proxy_checks.check_dangerous_delegatecall),
    _detector("arbitrary-external-call", Category.LOW_LEVEL_CALL, Severity.CRITICAL,
              "Call target and calldata both chosen by the caller",
              proxy_checks.check_arbitrary_external_call),
    _detector("unchecked-low-level-call", Category.LOW_LEVEL_CALL, Severity.MEDIUM,
              "Low-level call success flag not checked",
              proxy_checks.check_unchecked_low_level_call),
    _detector("upgradeable-proxy-issues", Category.PROXY_UPGRADE, Severity.HIGH,
              "Upgrade path usable by anyone",
              proxy_checks.check_upgradeable_proxy_issues),
    _detector("proxy-storage-collision", Category.PROXY_UPGRADE, Severity.MEDIUM,
              "Proxy state in sequential slots shared with the implementation",
              proxy_checks.check_proxy_storage_collision),
    _detector("missing-storage-gap", Category.PROXY_UPGRADE, Severity.LOW,
              "Upgradeable base contract without __gap",
              proxy_checks.check_missing_storage_gap),
    _detector("state-variable-shadowing", Category.INHERITANCE, Severity.MEDIUM,
              "State variable redeclared in a derived contract",
              proxy_checks.check_state_variable_shadowing),
    # Signatures
    _detector("signature-replay", Category.SIGNATURE_REPLAY, Severity.HIGH,
              "Signature accepted without nonce tracking",
              signature_checks.check_signature_replay),
    _detector("missing-chainid-in-signature", Category.SIGNATURE_REPLAY, Severity.MEDIUM,
              "Signed digest not bound to the chain id",
              signature_checks.check_missing_chainid_in_signature),
    _detector("ecrecover-zero-address", Category.SIGNATURE_REPLAY, Severity.MEDIUM,
              "ecrecover result not compared against address(0)",
              signature_checks.check_ecrecover_zero_address),
    # Gas griefing, arithmetic, randomness
    _detector("unbounded-loop", Category.GAS_GRIEFING, Severity.MEDIUM,
              "Loop over a growable storage array",
              gas_checks.check_unbounded_loop),
    _detector("external-call-in-loop", Category.GAS_GRIEFING, Severity.MEDIUM,
              "External call inside a loop",
              gas_checks.check_external_call_in_loop),
    _detector("unchecked-arithmetic", Category.ARITHMETIC, Severity.MEDIUM,
              "Arithmetic on non-constant values inside unchecked",
              arithmetic_checks.check_unchecked_arithmetic),
    _detector("divide-before-multiply", Category.ARITHMETIC, Severity.LOW,
              "Division performed before multiplication",
              arithmetic_checks.check_divide_before_multiply),
    _detector("weak-randomness", Category.RANDOMNESS, Severity.HIGH,
              "Randomness derived from block fields",
              arithmetic_checks.check_weak_randomness),
    _detector("locked-ether", Category.GAS_GRIEFING, Severity.MEDIUM,
              "Contract receives ether but cannot send it",
              gas_checks.check_locked_ether),
)
# fmt: on


DEFAULT_SUBSUMPTIONS: Tuple[SubsumptionRule, ...] = (
    SubsumptionRule(Category.ACCESS_CONTROL.value, "unprotected-initializer"),
    SubsumptionRule("dangerous-delegatecall", "upgradeable-proxy-issues"),
    SubsumptionRule("classic-reentrancy", "erc721-callback-reentrancy"),
    SubsumptionRule("arbitrary-external-call", "unchecked-low-level-call"),
    SubsumptionRule("classic-reentrancy", "cross-function-reentrancy"),
)


def default_registry() -> Registry:
    """Fresh registry holding every built-in detector."""
    registry = Registry()
    registry.register_all(BUILTIN_DETECTORS)
    return registry

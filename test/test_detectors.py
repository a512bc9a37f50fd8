"""Tests for the built-in detector families beyond access control and reentrancy."""
from model.ir import Call
from rules.ir import Confidence, Severity
from test_utils import (
    assign,
    binop,
    block,
    build,
    call,
    contract,
    elem,
    expr_stmt,
    findings_of,
    for_,
    function,
    function_named,
    index,
    index_of,
    lit,
    member,
    msg_sender,
    nodes_of,
    param,
    require,
    ret,
    scan,
    state_var,
    unop,
    var_decl,
)


def _only(report, detector_id):
    """The single finding of a detector, asserting there is exactly one."""
    found = findings_of(report, detector_id)
    assert len(found) == 1, [f.message for f in found]
    return found[0]


def _loop_over(array: str, *body):
    """`for (uint256 i = 0; i < array.length; i++) { body }`"""
    return for_(
        var_decl("i", "uint256", lit(0)),
        binop("i", "<", member(array, "length")),
        unop("++", "i", prefix=False),
        list(body),
    )


def _signature_params():
    return [param("amount", "uint256"), param("v", "uint8"), param("r", "bytes32"), param("s", "bytes32")]


# =============================================================================
# Token standards
# =============================================================================


class TestTokenChecks:
    """ERC-20 return values, approve races and receiver hooks."""

    def _payer(self, *statements):
        return build(
            contract(
                "Payer",
                state_var("token", "IERC20"),
                function("pay", list(statements), params=[param("to", "address"), param("amount", "uint256")]),
            )
        )

    def test_unchecked_erc20_transfer(self):
        transfer = call(member("token", "transfer"), "to", "amount")
        finding = _only(scan(self._payer(expr_stmt(transfer)), detectors=["unchecked-erc20-transfer"]), "unchecked-erc20-transfer")
        assert finding.location.function == "pay"
        assert finding.severity == Severity.MEDIUM
        assert "`transfer`" in finding.message

    def test_checked_erc20_transfer(self):
        program = self._payer(require(call(member("token", "transfer"), "to", "amount")))
        assert scan(program, detectors=["unchecked-erc20-transfer"]).findings == []

    def test_native_transfer_is_not_erc20(self):
        program = self._payer(expr_stmt(call(member("to", "transfer"), "amount")))
        assert scan(program, detectors=["unchecked-erc20-transfer"]).findings == []

    def _token(self, *extra):
        approve = function(
            "approve",
            [expr_stmt(assign(index(index("allowance", msg_sender()), "spender"), "amount"))],
            params=[param("spender", "address"), param("amount", "uint256")],
        )
        return build(
            contract("Token", state_var("allowance", "mapping(address => mapping(address => uint256))"), approve, *extra)
        )

    def test_approve_race_condition(self):
        finding = _only(scan(self._token(), detectors=["approve-race-condition"]), "approve-race-condition")
        assert finding.location.function == "approve"
        assert finding.severity == Severity.LOW
        assert finding.confidence == Confidence.POSSIBLE

    def test_increase_allowance_alternative(self):
        increase = function(
            "increaseAllowance",
            [expr_stmt(assign(index(index("allowance", msg_sender()), "spender"), "added", op="+="))],
            params=[param("spender", "address"), param("added", "uint256")],
        )
        assert scan(self._token(increase), detectors=["approve-race-condition"]).findings == []

    def _minter(self, statements, modifiers=()):
        return build(
            contract(
                "Minter",
                state_var("minted", "uint256"),
                function("mint", statements, params=[param("to", "address")], modifiers=modifiers),
            )
        )

    def test_write_after_safe_mint(self):
        program = self._minter([expr_stmt(call("_safeMint", "to", "minted")), expr_stmt(assign("minted", lit(1), op="+="))])
        finding = _only(scan(program, detectors=["erc721-callback-reentrancy"]), "erc721-callback-reentrancy")
        assert finding.severity == Severity.HIGH
        assert "`minted` is updated after `_safeMint`" in finding.message

    def test_write_before_safe_mint(self):
        program = self._minter([expr_stmt(assign("minted", lit(1), op="+=")), expr_stmt(call("_safeMint", "to", "minted"))])
        assert scan(program, detectors=["erc721-callback-reentrancy"]).findings == []

    def test_reentrancy_guard_suppresses_hook_finding(self):
        program = self._minter(
            [expr_stmt(call("_safeMint", "to", "minted")), expr_stmt(assign("minted", lit(1), op="+="))],
            modifiers=["nonReentrant"],
        )
        assert scan(program, detectors=["erc721-callback-reentrancy"]).findings == []


# =============================================================================
# Oracles and AMMs
# =============================================================================


class TestDefiChecks:
    """Spot prices, stale answers, slippage, deadlines and donations."""

    def test_spot_price_from_reserves(self):
        program = build(
            contract(
                "Lender",
                state_var("pair", "IUniswapV2Pair"),
                function(
                    "price",
                    [
                        var_decl(["r0", "r1", None], ["uint112", "uint112", ""], call(member("pair", "getReserves"))),
                        ret(binop("r1", "/", "r0")),
                    ],
                    mutability="view",
                ),
            )
        )
        finding = _only(scan(program, detectors=["spot-price-oracle"]), "spot-price-oracle")
        assert finding.severity == Severity.HIGH
        assert "`getReserves`" in finding.message

    def test_internal_helper_with_same_name(self):
        program = build(
            contract(
                "Lender",
                function("getReserves", [], visibility="internal"),
                function("price", [expr_stmt(call("getReserves"))]),
            )
        )
        assert scan(program, detectors=["spot-price-oracle"]).findings == []

    def _pricer(self, *checks):
        read = var_decl(
            [None, "answer", None, "updatedAt", None],
            ["", "int256", "", "uint256", ""],
            call(member("feed", "latestRoundData")),
        )
        return build(
            contract(
                "Pricer",
                state_var("feed", "AggregatorV3Interface"),
                function("price", [read, *checks, ret("answer")], mutability="view"),
            )
        )

    def test_stale_round_data(self):
        finding = _only(scan(self._pricer(), detectors=["stale-oracle-price"]), "stale-oracle-price")
        assert "`updatedAt`" in finding.message

    def test_fresh_round_data(self):
        fresh = require(binop(binop(member("block", "timestamp"), "-", "updatedAt"), "<", lit(3600)))
        assert scan(self._pricer(fresh), detectors=["stale-oracle-price"]).findings == []

    def test_latest_answer_is_deprecated(self):
        program = build(
            contract(
                "Pricer",
                state_var("feed", "AggregatorV3Interface"),
                function("price", [ret(call(member("feed", "latestAnswer")))], mutability="view"),
            )
        )
        assert "deprecated" in _only(scan(program, detectors=["stale-oracle-price"]), "stale-oracle-price").message

    def _swapper(self, min_out, deadline, params):
        swap = call(
            member("router", "swapExactTokensForTokens"), "amountIn", min_out, "path", msg_sender(), deadline
        )
        return build(
            contract(
                "Swapper",
                state_var("router", "IUniswapV2Router02"),
                function("swap", [expr_stmt(swap)], params=[param("amountIn", "uint256"), param("path", "address[]"), *params]),
            )
        )

    def test_zero_minimum_and_open_deadline(self):
        program = self._swapper(lit(0), member("block", "timestamp"), [])
        report = scan(program, detectors=["missing-slippage-protection", "missing-swap-deadline"])

        slippage = _only(report, "missing-slippage-protection")
        assert slippage.severity == Severity.HIGH
        assert slippage.confidence == Confidence.CERTAIN
        assert slippage.evidence == ("argument 1 of `swapExactTokensForTokens` is literal 0",)
        deadline = _only(report, "missing-swap-deadline")
        assert deadline.severity == Severity.MEDIUM
        assert report.findings == [slippage, deadline]

    def test_caller_supplied_bounds(self):
        program = self._swapper("minOut", "deadline", [param("minOut", "uint256"), param("deadline", "uint256")])
        assert scan(program, detectors=["missing-slippage-protection", "missing-swap-deadline"]).findings == []

    def test_share_price_from_own_balance(self):
        balance = call(member("token", "balanceOf"), call(elem("address"), "this"))
        program = build(
            contract(
                "Shares",
                state_var("token", "IERC20"),
                state_var("totalShares", "uint256"),
                function(
                    "sharesFor",
                    [ret(binop(binop("amount", "*", "totalShares"), "/", balance))],
                    params=[param("amount", "uint256")],
                    mutability="view",
                ),
            )
        )
        finding = _only(scan(program, detectors=["balance-donation-manipulation"]), "balance-donation-manipulation")
        assert finding.location.function == "sharesFor"
        assert finding.confidence == Confidence.POSSIBLE


# =============================================================================
# Bridges and restaking
# =============================================================================


class TestBridgeChecks:
    """Cross-chain message handlers."""

    def _receiver(self, *guards, extra_params=(), extra_vars=()):
        credit = expr_stmt(assign(index("balances", "to"), "amount", op="+="))
        return build(
            contract(
                "Receiver",
                state_var("balances", "mapping(address => uint256)"),
                *extra_vars,
                function(
                    "lzReceive",
                    [*guards, credit],
                    params=[param("srcChainId", "uint16"), param("to", "address"), param("amount", "uint256"), *extra_params],
                ),
            )
        )

    def test_unauthenticated_handler(self):
        finding = _only(scan(self._receiver(), detectors=["unvalidated-cross-chain-message"]), "unvalidated-cross-chain-message")
        assert finding.severity == Severity.CRITICAL
        assert len(finding.evidence) == 3
        assert finding.location.function == "lzReceive"

    def test_endpoint_checked(self):
        program = self._receiver(
            require(binop(msg_sender(), "==", "endpoint")),
            extra_vars=[state_var("endpoint", "address")],
        )
        assert scan(program, detectors=["unvalidated-cross-chain-message"]).findings == []

    def test_handler_without_replay_protection(self):
        finding = _only(scan(self._receiver(), detectors=["missing-message-replay-protection"]), "missing-message-replay-protection")
        assert finding.severity == Severity.HIGH
        assert "processed messages" in finding.message

    def test_processed_messages_recorded(self):
        program = self._receiver(
            require(unop("!", index("processed", "id"))),
            expr_stmt(assign(index("processed", "id"), lit("true", kind="bool"))),
            extra_params=[param("id", "bytes32")],
            extra_vars=[state_var("processed", "mapping(bytes32 => bool)")],
        )
        assert scan(program, detectors=["missing-message-replay-protection"]).findings == []


class TestRestakingChecks:
    """Slashing and withdrawal paths."""

    def _staking(self, slash_modifiers=(), withdraw_guards=()):
        return build(
            contract(
                "Staking",
                state_var("stakes", "mapping(address => uint256)"),
                state_var("unlockAt", "mapping(address => uint256)"),
                function("stake", [expr_stmt(assign(index("stakes", msg_sender()), member("msg", "value"), op="+="))],
                         mutability="payable"),
                function(
                    "slash",
                    [expr_stmt(assign(index("stakes", "operator"), "amount", op="-="))],
                    params=[param("operator", "address"), param("amount", "uint256")],
                    modifiers=slash_modifiers,
                ),
                function(
                    "withdraw",
                    [
                        *withdraw_guards,
                        expr_stmt(assign(index("stakes", msg_sender()), "amount", op="-=")),
                        expr_stmt(call(member(msg_sender(), "transfer"), "amount")),
                    ],
                    params=[param("amount", "uint256")],
                ),
            )
        )

    def test_anyone_can_slash(self):
        finding = _only(scan(self._staking(), detectors=["unprotected-slashing"]), "unprotected-slashing")
        assert finding.severity == Severity.CRITICAL
        assert finding.evidence[1] == "modifies `stakes`"

    def test_slashing_behind_modifier(self):
        assert scan(self._staking(slash_modifiers=["onlyOwner"]), detectors=["unprotected-slashing"]).findings == []

    def test_immediate_withdrawal(self):
        finding = _only(scan(self._staking(), detectors=["missing-withdrawal-delay"]), "missing-withdrawal-delay")
        assert finding.location.function == "withdraw"

    def test_withdrawal_after_unlock_time(self):
        unlocked = require(binop(member("block", "timestamp"), ">=", index("unlockAt", msg_sender())))
        assert scan(self._staking(withdraw_guards=[unlocked]), detectors=["missing-withdrawal-delay"]).findings == []

    def test_not_a_staking_contract(self):
        program = build(
            contract(
                "Vault",
                function("withdraw", [expr_stmt(call(member(msg_sender(), "transfer"), "amount"))],
                         params=[param("amount", "uint256")]),
            )
        )
        report = scan(program, detectors=["missing-withdrawal-delay"])
        assert report.findings == []
        assert report.skipped_items == 1


# =============================================================================
# Low-level calls and proxies
# =============================================================================


class TestLowLevelCalls:
    """Arbitrary calls and ignored success flags."""

    def _executor(self, modifiers=()):
        return build(
            contract(
                "Executor",
                function(
                    "execute",
                    [var_decl(["ok", None], ["bool", ""], call(member("target", "call"), "data")), require("ok")],
                    params=[param("target", "address"), param("data", "bytes")],
                    modifiers=modifiers,
                ),
            )
        )

    def test_arbitrary_call(self):
        finding = _only(scan(self._executor(), detectors=["arbitrary-external-call"]), "arbitrary-external-call")
        assert finding.severity == Severity.CRITICAL
        assert len(finding.evidence) == 3

    def test_arbitrary_call_behind_modifier(self):
        assert scan(self._executor(modifiers=["onlyOwner"]), detectors=["arbitrary-external-call"]).findings == []

    def test_checked_success_flag(self):
        assert scan(self._executor(), detectors=["unchecked-low-level-call"]).findings == []

    def _payer(self, *statements, returns=()):
        return build(
            contract(
                "Payer",
                function("pay", list(statements), params=[param("to", "address"), param("amount", "uint256")], returns=returns),
            )
        )

    def test_discarded_call_result(self):
        program = self._payer(expr_stmt(call(member("to", "call"), lit("", kind="string"), value="amount")))
        finding = _only(scan(program, detectors=["unchecked-low-level-call"]), "unchecked-low-level-call")
        assert "`call`" in finding.message

    def test_discarded_send_result(self):
        program = self._payer(expr_stmt(call(member("to", "send"), "amount")))
        assert "`send`" in _only(scan(program, detectors=["unchecked-low-level-call"]), "unchecked-low-level-call").message

    def test_returned_success_flag(self):
        program = self._payer(
            var_decl(["ok", None], ["bool", ""], call(member("to", "call"), lit("", kind="string"), value="amount")),
            ret("ok"),
            returns=[param("success", "bool")],
        )
        assert scan(program, detectors=["unchecked-low-level-call"]).findings == []


class TestProxyChecks:
    """Upgrade paths, proxy storage and inheritance layout."""

    def test_unguarded_upgrade(self):
        program = build(
            contract(
                "Impl",
                state_var("implementation", "address"),
                function("upgradeTo", [expr_stmt(assign("implementation", "newImpl"))], params=[param("newImpl", "address")]),
            )
        )
        finding = _only(scan(program, detectors=["upgradeable-proxy-issues"]), "upgradeable-proxy-issues")
        assert "lets anyone replace the implementation" in finding.message

    def test_guarded_upgrade(self):
        program = build(
            contract(
                "Impl",
                state_var("implementation", "address"),
                function("upgradeTo", [expr_stmt(assign("implementation", "newImpl"))],
                         params=[param("newImpl", "address")], modifiers=["onlyOwner"]),
            )
        )
        assert scan(program, detectors=["upgradeable-proxy-issues"]).findings == []

    def test_empty_authorize_upgrade(self):
        program = build(
            contract(
                "Vault",
                function("_authorizeUpgrade", [], params=[param("newImpl", "address")], visibility="internal"),
                bases=["UUPSUpgradeable"],
            )
        )
        finding = _only(scan(program, detectors=["upgradeable-proxy-issues"]), "upgradeable-proxy-issues")
        assert finding.location.function == "_authorizeUpgrade"
        assert finding.confidence == Confidence.CERTAIN

    def test_proxy_storage_collision(self):
        program = build(
            contract(
                "SimpleProxy",
                state_var("implementation", "address"),
                state_var("admin", "address"),
                function("upgradeTo", [expr_stmt(assign("implementation", "newImpl"))],
                         params=[param("newImpl", "address")], modifiers=["onlyAdmin"]),
            )
        )
        found = findings_of(scan(program, detectors=["proxy-storage-collision"]), "proxy-storage-collision")
        assert [f.message.split(",")[0] for f in found] == [
            "proxy variable `implementation` occupies slot 0",
            "proxy variable `admin` occupies slot 1",
        ]
        assert all(f.location.function is None for f in found)

    def _upgradeable_base(self, *extra_vars):
        return build(
            contract(
                "BaseV1",
                state_var("counter", "uint256"),
                *extra_vars,
                function("inc", [expr_stmt(assign("counter", lit(1), op="+="))]),
                bases=["Initializable"],
            ),
            contract("AppV1", function("run", []), bases=["BaseV1"]),
        )

    def test_missing_storage_gap(self):
        finding = _only(scan(self._upgradeable_base(), detectors=["missing-storage-gap"]), "missing-storage-gap")
        assert finding.location.contract == "BaseV1"
        assert finding.severity == Severity.LOW

    def test_storage_gap_present(self):
        program = self._upgradeable_base(state_var("__gap", "uint256[50]"))
        assert scan(program, detectors=["missing-storage-gap"]).findings == []

    def test_state_variable_shadowing(self):
        program = build(
            contract("Base", state_var("owner", "address"), function("g", [])),
            contract("Child", state_var("owner", "address"), function("f", []), bases=["Base"]),
        )
        finding = _only(scan(program, detectors=["state-variable-shadowing"]), "state-variable-shadowing")
        assert finding.location.contract == "Child"
        assert "shadows `Base.owner`" in finding.message


# =============================================================================
# Signatures
# =============================================================================


class TestSignatureChecks:
    """Replay, chain binding and ecrecover results."""

    def _claims(self, *statements, digest=None, extra_vars=()):
        digest_decl = var_decl(
            "digest", "bytes32", digest or call("keccak256", call(member("abi", "encode"), "amount", msg_sender()))
        )
        body = [
            digest_decl,
            var_decl("recovered", "address", call("ecrecover", "digest", "v", "r", "s")),
            require(binop("recovered", "==", "signer")),
            *statements,
            expr_stmt(call(member(msg_sender(), "transfer"), "amount")),
        ]
        return build(
            contract("Claims", state_var("signer", "address"), *extra_vars, function("claim", body, params=_signature_params()))
        )

    def test_signature_replay(self):
        finding = _only(scan(self._claims(), detectors=["signature-replay"]), "signature-replay")
        assert finding.severity == Severity.HIGH
        assert finding.evidence[0] == "signer recovered with `ecrecover`"

    def test_nonce_consumed(self):
        program = self._claims(
            expr_stmt(assign(index("nonces", msg_sender()), lit(1), op="+=")),
            extra_vars=[state_var("nonces", "mapping(address => uint256)")],
        )
        assert scan(program, detectors=["signature-replay"]).findings == []

    def test_digest_without_chain_id(self):
        finding = _only(scan(self._claims(), detectors=["missing-chainid-in-signature"]), "missing-chainid-in-signature")
        assert finding.location.function == "claim"

    def test_digest_with_chain_id(self):
        digest = call("keccak256", call(member("abi", "encode"), "amount", member("block", "chainid")))
        assert scan(self._claims(digest=digest), detectors=["missing-chainid-in-signature"]).findings == []

    def test_ecrecover_result_not_zero_checked(self):
        finding = _only(scan(self._claims(), detectors=["ecrecover-zero-address"]), "ecrecover-zero-address")
        assert finding.severity == Severity.MEDIUM

    def test_ecrecover_result_zero_checked(self):
        program = self._claims(require(binop("recovered", "!=", call(elem("address"), lit(0)))))
        assert scan(program, detectors=["ecrecover-zero-address"]).findings == []


# =============================================================================
# Gas griefing
# =============================================================================


class TestGasChecks:
    """Loops over storage, calls in loops, locked ether."""

    def _airdrop(self, with_join: bool):
        members = [
            state_var("users", "address[]"),
            state_var("count", "uint256"),
            function("tally", [_loop_over("users", expr_stmt(assign("count", lit(1), op="+=")))]),
        ]
        if with_join:
            members.append(function("join", [expr_stmt(call(member("users", "push"), msg_sender()))]))
        return build(contract("Airdrop", *members))

    def test_loop_over_growable_array(self):
        finding = _only(scan(self._airdrop(with_join=True), detectors=["unbounded-loop"]), "unbounded-loop")
        assert finding.location.function == "tally"
        assert finding.confidence == Confidence.LIKELY
        assert len(finding.evidence) == 2

    def test_loop_over_array_nobody_grows(self):
        finding = _only(scan(self._airdrop(with_join=False), detectors=["unbounded-loop"]), "unbounded-loop")
        assert finding.confidence == Confidence.POSSIBLE

    def test_external_call_in_loop(self):
        program = build(
            contract(
                "Payout",
                state_var("recipients", "address[]"),
                function("distribute", [_loop_over("recipients", expr_stmt(call(member(index("recipients", "i"), "transfer"), lit(1))))]),
            )
        )
        finding = _only(scan(program, detectors=["external-call-in-loop"]), "external-call-in-loop")
        assert "`transfer`" in finding.message

    def test_locked_ether(self):
        program = build(contract("Bank", function("deposit", [], mutability="payable")))
        finding = _only(scan(program, detectors=["locked-ether"]), "locked-ether")
        assert finding.location.function is None
        assert "`deposit`" in finding.message

    def test_ether_can_leave(self):
        program = build(
            contract(
                "Bank",
                function("deposit", [], mutability="payable"),
                function("withdraw", [expr_stmt(call(member(msg_sender(), "transfer"), lit(1)))]),
            )
        )
        assert scan(program, detectors=["locked-ether"]).findings == []


# =============================================================================
# Arithmetic and randomness
# =============================================================================


class TestArithmeticChecks:
    """Unchecked math, precision loss and weak randomness."""

    def _adder(self, statement, unchecked=True):
        return build(
            contract(
                "Counter",
                state_var("total", "uint256"),
                function("add", [block(statement, unchecked=unchecked)], params=[param("a", "uint256")]),
            )
        )

    def test_unchecked_addition(self):
        program = self._adder(expr_stmt(assign("total", "a", op="+=")))
        finding = _only(scan(program, detectors=["unchecked-arithmetic"]), "unchecked-arithmetic")
        assert "arithmetic on `a`, `total`" in finding.message

    def test_checked_addition(self):
        program = self._adder(expr_stmt(assign("total", "a", op="+=")), unchecked=False)
        assert scan(program, detectors=["unchecked-arithmetic"]).findings == []

    def test_unchecked_constants_only(self):
        program = self._adder(var_decl("x", "uint256", binop(lit(1), "+", lit(2))))
        assert scan(program, detectors=["unchecked-arithmetic"]).findings == []

    def _fee(self, *statements):
        return build(
            contract("Fees", function("fee", list(statements), params=[param("a", "uint256"), param("b", "uint256")],
                                      mutability="pure"))
        )

    def test_divide_then_multiply(self):
        program = self._fee(ret(binop(binop("a", "/", "b"), "*", lit(10))))
        finding = _only(scan(program, detectors=["divide-before-multiply"]), "divide-before-multiply")
        assert finding.evidence == ("division nested in the product",)

    def test_divide_into_local_then_multiply(self):
        program = self._fee(var_decl("q", "uint256", binop("a", "/", "b")), ret(binop("q", "*", "b")))
        finding = _only(scan(program, detectors=["divide-before-multiply"]), "divide-before-multiply")
        assert finding.evidence == ("`q` holds a division result",)

    def test_multiply_then_divide(self):
        program = self._fee(ret(binop(binop("a", "*", lit(10)), "/", "b")))
        assert scan(program, detectors=["divide-before-multiply"]).findings == []

    def test_modulo_of_timestamp(self):
        program = build(contract("Dice", function("roll", [ret(binop(member("block", "timestamp"), "%", lit(6)))], mutability="view")))
        finding = _only(scan(program, detectors=["weak-randomness"]), "weak-randomness")
        assert "`block.timestamp`" in finding.message
        assert finding.confidence == Confidence.LIKELY

    def test_hash_of_prevrandao(self):
        seed = call("keccak256", call(member("abi", "encodePacked"), member("block", "prevrandao"), msg_sender()))
        program = build(contract("Lottery", function("draw", [var_decl("seed", "bytes32", seed)])))
        finding = _only(scan(program, detectors=["weak-randomness"]), "weak-randomness")
        assert "`block.prevrandao`" in finding.message
        assert finding.confidence == Confidence.POSSIBLE


# =============================================================================
# Access control and reentrancy
# =============================================================================


class TestAccessChecks:
    """Initializers, selfdestruct and ownership handover."""

    def _initializable(self, *guards, modifiers=(), extra_vars=()):
        return build(
            contract(
                "Vault",
                state_var("owner", "address"),
                *extra_vars,
                function(
                    "initialize",
                    [*guards, expr_stmt(assign("owner", "newOwner"))],
                    params=[param("newOwner", "address")],
                    modifiers=modifiers,
                ),
            )
        )

    def test_unprotected_initializer(self):
        finding = _only(scan(self._initializable(), detectors=["unprotected-initializer"]), "unprotected-initializer")
        assert finding.severity == Severity.CRITICAL
        assert finding.evidence[-1] == "sets privileged state `owner`"

    def test_initializer_modifier(self):
        program = self._initializable(modifiers=["initializer"])
        assert scan(program, detectors=["unprotected-initializer"]).findings == []

    def test_initialized_flag_checked(self):
        program = self._initializable(
            require(unop("!", "initialized")),
            expr_stmt(assign("initialized", lit("true", kind="bool"))),
            extra_vars=[state_var("initialized", "bool")],
        )
        assert scan(program, detectors=["unprotected-initializer"]).findings == []

    def test_selfdestruct_in_public_function(self):
        kill = call("selfdestruct", msg_sender())
        program = build(contract("Killable", function("kill", [expr_stmt(kill)])))
        finding = _only(scan(program, detectors=["unprotected-selfdestruct"]), "unprotected-selfdestruct")
        assert finding.message == "anyone can destroy the contract through `kill`"
        assert finding.confidence == Confidence.CERTAIN

    def test_selfdestruct_through_internal_helper(self):
        program = build(
            contract(
                "Killable",
                function("destroy", [expr_stmt(call("_destroy"))]),
                function("_destroy", [expr_stmt(call("selfdestruct", msg_sender()))], visibility="internal"),
            )
        )
        finding = _only(scan(program, detectors=["unprotected-selfdestruct"]), "unprotected-selfdestruct")
        assert finding.location.function == "destroy"
        assert finding.message.endswith("via `_destroy`")

    def test_selfdestruct_behind_modifier(self):
        program = build(
            contract("Killable", function("kill", [expr_stmt(call("selfdestruct", msg_sender()))], modifiers=["onlyOwner"]))
        )
        assert scan(program, detectors=["unprotected-selfdestruct"]).findings == []

    def _owned(self, *checks, extra_vars=()):
        return build(
            contract(
                "Owned",
                state_var("owner", "address"),
                *extra_vars,
                function(
                    "transferOwnership",
                    [require(binop(msg_sender(), "==", "owner")), *checks, expr_stmt(assign("owner", "newOwner"))],
                    params=[param("newOwner", "address")],
                ),
            )
        )

    def test_single_step_transfer(self):
        finding = _only(scan(self._owned(), detectors=["single-step-ownership-transfer"]), "single-step-ownership-transfer")
        assert finding.severity == Severity.LOW
        assert finding.evidence == ("`owner` assigned directly from parameter `newOwner`",)

    def test_two_step_transfer(self):
        program = self._owned(extra_vars=[state_var("pendingOwner", "address")])
        assert scan(program, detectors=["single-step-ownership-transfer"]).findings == []

    def test_missing_zero_address_check(self):
        finding = _only(scan(self._owned(), detectors=["missing-zero-address-check"]), "missing-zero-address-check")
        assert finding.message == "`owner` set from `newOwner` without checking for address(0)"

    def test_zero_address_checked(self):
        program = self._owned(require(binop("newOwner", "!=", call(elem("address"), lit(0)))))
        assert scan(program, detectors=["missing-zero-address-check"]).findings == []


class TestReentrancyChecks:
    """Stale state visible to views, and stipend-limited transfers."""

    def _vault(self, payout, *extra):
        withdraw = function(
            "withdraw",
            [payout, expr_stmt(assign(index("balances", msg_sender()), "amount", op="-="))],
            params=[param("amount", "uint256")],
        )
        return build(contract("Vault", state_var("balances", "mapping(address => uint256)"), withdraw, *extra))

    def _call_payout(self):
        return var_decl(["ok", None], ["bool", ""], call(member(msg_sender(), "call"), lit("", kind="string"), value="amount"))

    def test_view_reads_stale_balance(self):
        view = function(
            "balanceOf",
            [ret(index("balances", "who"))],
            params=[param("who", "address")],
            mutability="view",
        )
        program = self._vault(self._call_payout(), view)
        finding = _only(scan(program, detectors=["read-only-reentrancy"]), "read-only-reentrancy")
        assert finding.location.function == "balanceOf"
        assert "`withdraw` updates only after calling `msg.sender.call`" in finding.message

    def test_no_view_no_finding(self):
        assert scan(self._vault(self._call_payout()), detectors=["read-only-reentrancy"]).findings == []

    def test_transfer_stipend_cannot_reenter(self):
        program = self._vault(expr_stmt(call(member(msg_sender(), "transfer"), "amount")))
        report = scan(program, detectors=["classic-reentrancy", "cross-function-reentrancy"])
        assert report.findings == []

    def _helper_vault(self, pay_first: bool):
        debit = function(
            "_debit",
            [expr_stmt(assign(index("balances", msg_sender()), "amount", op="-="))],
            params=[param("amount", "uint256")],
            visibility="internal",
        )
        payout, settle = self._call_payout(), expr_stmt(call("_debit", "amount"))
        body = [payout, require("ok"), settle] if pay_first else [settle, payout, require("ok")]
        withdraw = function("withdraw", body, params=[param("amount", "uint256")])
        return build(contract("Vault", state_var("balances", "mapping(address => uint256)"), debit, withdraw))

    def test_write_in_helper_after_call(self):
        program = self._helper_vault(pay_first=True)
        finding = _only(scan(program, detectors=["classic-reentrancy"]), "classic-reentrancy")
        debit_call = next(c for c in nodes_of(program, Call) if c.name == "_debit")
        assert finding.location.function == "withdraw"
        assert finding.location.span == debit_call.span
        assert "`balances` is updated after the external call `msg.sender.call`" in finding.message

    def test_helper_before_call_is_safe(self):
        program = self._helper_vault(pay_first=False)
        assert scan(program, detectors=["classic-reentrancy"]).findings == []

    def test_internal_call_site_counts_prior_calls(self):
        program = self._helper_vault(pay_first=True)
        withdraw = function_named(program, "withdraw")
        sites = index_of(program).internal_calls_of(withdraw.id)
        assert [s.calls_before for s in sites] == [1]
        assert sites[0].after_external_call

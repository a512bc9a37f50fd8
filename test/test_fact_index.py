"""Tests for the Fact Index: ordering facts, call graph, guards, inheritance."""
import pytest

from analysis.fact_index import build_fact_index
from analysis.inheritance import Linearizer, type_size
from core.errors import CyclicInheritanceError
from model.ir import Assignment, Call
from test_utils import (
    assign,
    binop,
    build,
    call,
    contract,
    expr_stmt,
    function,
    function_named,
    index,
    index_of,
    lit,
    member,
    modifier,
    msg_sender,
    nodes_of,
    param,
    placeholder,
    require,
    state_var,
    var_decl,
)


def _withdraw(write_first: bool):
    """`withdraw(amount)` with the balance update before or after the external call."""
    transfer = var_decl(["ok", None], ["bool", ""], call(member(msg_sender(), "call"), lit("", kind="string"), value="amount"))
    update = expr_stmt(assign(index("balances", msg_sender()), "amount", op="-="))
    check = require("ok")
    body = [update, transfer, check] if write_first else [transfer, check, update]
    return build(
        contract(
            "Vault",
            state_var("balances", "mapping(address => uint256)"),
            function("withdraw", body, params=[param("amount", "uint256")]),
        )
    )


def _var_id(program, name):
    return next(v.id for v in program.state_variables if v.name == name)


class TestStateOrdering:
    """Writes carry whether an external call was already made."""

    def test_write_after_external_call(self):
        program = _withdraw(write_first=False)
        index = index_of(program)
        withdraw = function_named(program, "withdraw")
        balances = _var_id(program, "balances")

        late = index.writes_after_external_call(withdraw.id)
        assert [w.var_id for w in late] == [balances]
        assert late[0].calls_before == 1
        update = nodes_of(program, Assignment)[0]
        assert late[0].node_id == update.id
        assert late[0].span == update.span

        low_level = next(c for c in nodes_of(program, Call) if c.name == "call")
        ordering = index.ordering(withdraw.id, low_level.id)
        assert ordering.writes_before == ()
        assert ordering.writes_after == (balances,)

    def test_write_before_external_call(self):
        program = _withdraw(write_first=True)
        index = index_of(program)
        withdraw = function_named(program, "withdraw")
        balances = _var_id(program, "balances")

        assert index.writes_after_external_call(withdraw.id) == ()
        site = index.access(withdraw.id).write_sites[0]
        assert not site.after_external_call
        low_level = index.external_calls_of(withdraw.id)[0]
        assert index.ordering(withdraw.id, low_level.node_id).writes_before == (balances,)

    def test_compound_assignment_reads_and_writes(self):
        program = _withdraw(write_first=False)
        access = index_of(program).access(function_named(program, "withdraw").id)
        balances = _var_id(program, "balances")
        assert access.reads == (balances,)
        assert access.writes == (balances,)

    def test_external_call_sites(self):
        program = _withdraw(write_first=False)
        sites = index_of(program).external_calls_of(function_named(program, "withdraw").id)
        assert len(sites) == 1
        assert sites[0].member == "call"
        assert sites[0].target == "msg.sender"
        assert sites[0].transfers_value
        assert not sites[0].is_delegatecall
        assert sites[0].ordinal == 0

    def test_locals_shadow_state(self):
        program = build(
            contract(
                "C",
                state_var("total", "uint256"),
                function("f", [var_decl("total", "uint256", lit(1)), expr_stmt(assign("total", lit(2)))]),
            )
        )
        access = index_of(program).access(function_named(program, "f").id)
        assert access.writes == ()

    def test_array_push_is_a_write(self):
        program = build(
            contract(
                "C",
                state_var("users", "address[]"),
                function("join", [expr_stmt(call(member("users", "push"), msg_sender()))]),
            )
        )
        access = index_of(program).access(function_named(program, "join").id)
        assert access.writes == (_var_id(program, "users"),)


class TestCallGraph:
    """Internal calls resolve through the linearization."""

    def _program(self):
        return build(
            contract("Base", function("h", [expr_stmt(assign("count", lit(1)))], visibility="internal"),
                     state_var("count", "uint256")),
            contract(
                "C",
                function("f", [expr_stmt(call("g"))]),
                function("g", [expr_stmt(call("h"))], visibility="internal"),
                bases=["Base"],
            ),
        )

    def test_transitive_callees(self):
        program = self._program()
        index = index_of(program)
        f, g, h = (function_named(program, n) for n in ("f", "g", "h"))
        assert index.callees(f.id) == (g.id,)
        assert index.transitive_callees(f.id) == tuple(sorted((g.id, h.id)))
        assert index.callers(h.id) == (g.id,)

    def test_transitive_writes_follow_callees(self):
        program = self._program()
        index = index_of(program)
        f = function_named(program, "f")
        assert index.transitive_writes[f.id] == (_var_id(program, "count"),)
        assert index.access(f.id).writes == ()

    def test_transitive_external_calls(self):
        program = build(
            contract(
                "C",
                function("f", [expr_stmt(call("g"))]),
                function("g", [expr_stmt(call(member(msg_sender(), "call"), lit("", kind="string")))], visibility="internal"),
            )
        )
        index = index_of(program)
        f, g = function_named(program, "f"), function_named(program, "g")
        assert index.external_calls_of(f.id) == ()
        sites = index.transitive_external_calls(f.id)
        assert [(s.function_id, s.member) for s in sites] == [(g.id, "call")]

    def test_super_call_skips_own_definition(self):
        program = build(
            contract("A", function("hook", [], visibility="internal", virtual=True)),
            contract("B", function("hook", [expr_stmt(call(member("super", "hook")))], visibility="internal"), bases=["A"]),
        )
        index = index_of(program)
        a_hook = function_named(program, "hook", "A")
        b_hook = function_named(program, "hook", "B")
        assert index.callees(b_hook.id) == (a_hook.id,)


class TestGuards:
    """Authorization checks in bodies and resolved modifiers."""

    def _program(self, *functions):
        return build(
            contract(
                "Owned",
                state_var("owner", "address"),
                modifier("onlyOwner", [require(binop(msg_sender(), "==", "owner")), placeholder()]),
                *functions,
            )
        )

    def test_declared_modifier_checking_sender(self):
        program = self._program(function("set", [expr_stmt(assign("owner", lit(0)))], modifiers=["onlyOwner"]))
        index = index_of(program)
        func = function_named(program, "set")
        guards = index.guards_of(func.id)
        assert guards.access_modifiers == ("onlyOwner",)
        assert index.has_access_control(func.id)
        assert index.privileged_vars[0] == (_var_id(program, "owner"),)

    def test_inline_sender_check(self):
        program = self._program(function("set", [require(binop(msg_sender(), "==", "owner"))]))
        guards = index_of(program).guards_of(function_named(program, "set").id)
        assert guards.checks_sender
        assert guards.guard_kinds() == ["sender"]

    def test_undeclared_modifier_by_name(self):
        program = self._program(function("set", [], modifiers=["onlyAdmin"]))
        assert index_of(program).has_access_control(function_named(program, "set").id)

    def test_reentrancy_guard(self):
        program = self._program(function("withdraw", [], modifiers=["nonReentrant"]))
        index = index_of(program)
        func = function_named(program, "withdraw")
        assert index.has_reentrancy_guard(func.id)
        assert not index.has_access_control(func.id)

    def test_tx_origin_sites(self):
        program = self._program(function("set", [require(binop(member("tx", "origin"), "==", "owner"))]))
        guards = index_of(program).guards_of(function_named(program, "set").id)
        assert guards.checks_tx_origin
        assert len(guards.tx_origin_sites) == 1

    def test_guard_inherited_through_internal_callee(self):
        program = self._program(
            function("_check", [require(binop(msg_sender(), "==", "owner"))], visibility="internal"),
            function("set", [expr_stmt(call("_check"))]),
        )
        assert index_of(program).has_access_control(function_named(program, "set").id)


class TestInheritance:
    """C3 linearization, storage layout and shadowing."""

    def test_linearization_most_derived_first(self):
        program = build(
            contract("A"),
            contract("B", bases=["A"]),
            contract("C", bases=["A", "B"]),
        )
        index = index_of(program)
        assert index.linearization[2] == (2, 1, 0)

    def test_inconsistent_base_order(self):
        program = build(
            contract("A"),
            contract("B", bases=["A"]),
            contract("C", bases=["B", "A"]),
        )
        with pytest.raises(CyclicInheritanceError, match="no consistent linearization"):
            Linearizer(program).linearize(2)

    def test_cycle_is_recorded_not_raised(self):
        program = build(
            contract("A", bases=["B"]),
            contract("B", bases=["A"]),
            contract("Solo", function("f", [])),
        )
        index = build_fact_index(program)
        assert sorted(index.failures) == [0, 1]
        assert index.failures[0].cycle[0] == index.failures[0].cycle[-1]
        assert index.is_indexed(2)
        assert not index.is_indexed(0)

    def test_storage_packing(self):
        program = build(
            contract(
                "A",
                state_var("owner", "address"),
                state_var("paused", "bool"),
                state_var("total", "uint256"),
                state_var("FEE", "uint256", value=lit(3), constant=True),
                state_var("balances", "mapping(address => uint256)"),
            )
        )
        layout = index_of(program).storage_layout[0]
        assert [(s.slot, s.offset) for s in layout] == [(0, 0), (0, 20), (1, 0), (2, 0)]

    def test_shadowing(self):
        program = build(
            contract("Base", state_var("owner", "address")),
            contract("Child", state_var("owner", "address"), bases=["Base"]),
        )
        index = index_of(program)
        child_owner, base_owner = 1, 0
        assert index.shadowing[1] == ((child_owner, base_owner),)
        assert index.resolve_state_var(1, "owner") == child_owner

    def test_type_size(self):
        assert type_size("uint128") == (16, True)
        assert type_size("bytes4") == (4, True)
        assert type_size("string") == (32, False)
        assert type_size("uint256[]") == (32, False)


class TestDeterminism:
    """Rebuilding the index of the same model gives the same canonical form."""

    def _program(self):
        return build(
            contract(
                "Vault",
                state_var("owner", "address"),
                state_var("balances", "mapping(address => uint256)"),
                modifier("onlyOwner", [require(binop(msg_sender(), "==", "owner")), placeholder()]),
                function("setOwner", [expr_stmt(assign("owner", "next"))], params=[param("next", "address")],
                         modifiers=["onlyOwner"]),
                function(
                    "withdraw",
                    [
                        expr_stmt(call(member(msg_sender(), "call"), lit("", kind="string"), value="amount")),
                        expr_stmt(assign(index("balances", msg_sender()), "amount", op="-=")),
                    ],
                    params=[param("amount", "uint256")],
                ),
            ),
            contract("Child", function("f", [expr_stmt(call("withdraw", lit(1)))]), bases=["Vault"]),
        )

    def test_fingerprint_stable_across_rebuilds(self):
        program = self._program()
        assert build_fact_index(program).fingerprint() == build_fact_index(program).fingerprint()

    def test_parallel_build_matches_sequential(self):
        program = self._program()
        sequential = build_fact_index(program, workers=1)
        parallel = build_fact_index(program, workers=4)
        assert sequential.to_dict() == parallel.to_dict()
        assert sequential.fingerprint() == parallel.fingerprint()

    def test_fingerprint_changes_with_model(self):
        first = build_fact_index(self._program())
        other = build(contract("Vault", state_var("owner", "address")))
        assert first.fingerprint() != build_fact_index(other).fingerprint()

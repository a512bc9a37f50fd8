"""
Program Model builder: upstream parse tree -> ProgramModel.

The frontend hands us a JSON-compatible mapping shaped like the solc compact
AST (`nodeType`, `src`, `nodes`, ...). Translation is deterministic: arena ids
are assigned in document order, so the same tree always yields the same model.

No detector knowledge lives here. The only interpretation we do is call
classification (internal / external / low-level / ...), because every consumer
needs it and it depends on declarations visible to the calling contract.
"""

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from core.errors import MalformedInputError
from core.utils import debug
from model.ir import (
    Assignment,
    BinaryOp,
    Block,
    Call,
    CallKind,
    Conditional,
    Contract,
    ElementaryType,
    Emit,
    Expr,
    ExprStmt,
    Function,
    Identifier,
    If,
    IndexAccess,
    InlineAssembly,
    Jump,
    Literal,
    Loop,
    MemberAccess,
    Modifier,
    ModifierInvocation,
    NewExpr,
    Node,
    Owner,
    Parameter,
    Placeholder,
    ProgramModel,
    Return,
    Revert,
    StateVariable,
    Stmt,
    Try,
    TupleExpr,
    UnaryOp,
    Unknown,
    UnknownStmt,
    VarDecl,
)
from model.utils import LineTable, SourceSpan, parse_src


BUILTIN_FUNCTIONS = {
    "require",
    "assert",
    "revert",
    "keccak256",
    "sha256",
    "sha3",
    "ripemd160",
    "ecrecover",
    "addmod",
    "mulmod",
    "selfdestruct",
    "suicide",
    "blockhash",
    "gasleft",
    "type",
}

# Receivers whose members are language builtins (`abi.encode`, `block.timestamp`)
BUILTIN_RECEIVERS = {"abi", "msg", "block", "tx", "string", "bytes", "type"}

LOW_LEVEL_MEMBERS = {"call", "delegatecall", "staticcall", "callcode"}
VALUE_TRANSFER_MEMBERS = {"send", "transfer"}
ARRAY_MEMBERS = {"push", "pop"}

# Libraries commonly imported from outside the unit
KNOWN_LIBRARIES = {"SafeMath", "SafeERC20", "Address", "ECDSA", "Math", "Strings", "SafeCast", "MerkleProof"}

_ELEMENTARY_RE = re.compile(r"^(u?int\d*|bool|bytes\d*|byte|string|address( payable)?|fixed|ufixed)$")

_SPECIAL_FUNCTION_NAMES = {"constructor": "constructor", "fallback": "fallback", "receive": "receive"}


def is_elementary_type(type_name: str) -> bool:
    """True for value types (`uint256`, `address`, `bytes32`, ...)."""
    clean = type_name.replace(" memory", "").replace(" storage", "").replace(" calldata", "").strip()
    return bool(_ELEMENTARY_RE.match(clean))


def mapping_value_type(type_name: str) -> Optional[str]:
    """`mapping(address => mapping(uint => IERC20))` -> `IERC20`; None for non-mappings."""
    if not type_name.startswith("mapping("):
        return None
    depth = 0
    for i, c in enumerate(type_name):
        if c == "(":
            depth += 1
        elif c == ")":
            depth -= 1
        elif c == "=" and depth == 1 and type_name[i : i + 2] == "=>":
            inner = type_name[i + 2 : type_name.rfind(")")].strip()
            return mapping_value_type(inner) or inner
    return None


def _type_name(value: Any) -> str:
    """Normalize a type attribute: plain string, solc TypeName dict, or missing."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        descriptions = value.get("typeDescriptions")
        if isinstance(descriptions, Mapping) and descriptions.get("typeString"):
            return str(descriptions["typeString"])
        for key in ("name", "typeString"):
            if value.get(key):
                return str(value[key])
        path = value.get("pathNode")
        if isinstance(path, Mapping) and path.get("name"):
            return str(path["name"])
    return str(value)


def _name_of(value: Any) -> str:
    """Extract a referenced name from a string or a `{name: ...}` / `{baseName: {...}}` mapping."""
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        for key in ("baseName", "modifierName", "libraryName"):
            if key in value:
                return _name_of(value[key])
        if value.get("name"):
            return str(value["name"])
        if value.get("namePath"):
            return str(value["namePath"])
    return ""


class _ContractScope:
    """Names visible to a contract while its bodies are built (own + inherited declarations)."""

    def __init__(self):
        self.functions: Set[str] = set()
        self.events: Set[str] = set()
        self.structs: Set[str] = set()
        self.errors: Set[str] = set()
        self.state_types: Dict[str, str] = {}
        self.ancestors: Set[str] = set()


class ProgramBuilder:
    """
    Translates one parse tree into one ProgramModel.

    Usage:
        program = ProgramBuilder(tree).build()
    """

    def __init__(self, tree: Any, unit: Optional[str] = None):
        self.tree = tree
        self.unit = unit or "<unit>"
        self._lines: Optional[LineTable] = None

        self.contracts: List[Contract] = []
        self.functions: List[Function] = []
        self.modifiers: List[Modifier] = []
        self.state_variables: List[StateVariable] = []
        self.nodes: List[Optional[Node]] = []
        self.parents: List[int] = []
        self.owners: List[Owner] = []

        # Per-contract raw declarations, consumed by the body pass
        self._raw_functions: List[Tuple[Function, Mapping]] = []
        self._raw_modifiers: List[Tuple[Modifier, Mapping]] = []
        self._raw_state_values: List[Tuple[StateVariable, Mapping]] = []
        self._declared: Dict[str, Mapping] = {}
        self._contract_kinds: Dict[str, str] = {}
        self._scopes: Dict[int, _ContractScope] = {}

        # Body-pass state
        self._owner: Owner = ("function", -1)
        self._scope: _ContractScope = _ContractScope()
        self._locals: List[Dict[str, str]] = []

    # =========================================================================
    # Entry point
    # =========================================================================

    def build(self) -> ProgramModel:
        tree = self.tree
        if not isinstance(tree, Mapping) or tree.get("nodeType") != "SourceUnit":
            raise MalformedInputError("root node must be a SourceUnit mapping", self.unit)

        if tree.get("absolutePath"):
            self.unit = str(tree["absolutePath"])
        source = tree.get("source")
        if isinstance(source, str):
            self._lines = LineTable(source)

        members = tree.get("nodes", [])
        if not isinstance(members, list):
            raise MalformedInputError("SourceUnit.nodes must be a list", self.unit)

        contract_nodes = []
        for node in members:
            self._require_mapping(node, "top-level node")
            if node["nodeType"] == "ContractDefinition":
                contract_nodes.append(node)
            else:
                debug(f"builder: skipping top-level {node['nodeType']}")

        self._declare_contracts(contract_nodes)
        for contract, node in zip(self.contracts, contract_nodes):
            self._declare_members(contract, node)
        for contract in self.contracts:
            self._scopes[contract.id] = self._build_scope(contract)
        self._build_bodies()

        program = ProgramModel(
            unit=self.unit,
            contracts=self.contracts,
            functions=self.functions,
            modifiers=self.modifiers,
            state_variables=self.state_variables,
            nodes=self.nodes,  # type: ignore[arg-type]
            parents=self.parents,
            owners=self.owners,
        )
        self._validate(program)
        debug(
            f"builder: {self.unit}: {len(self.contracts)} contracts, {len(self.functions)} functions, "
            f"{len(self.nodes)} nodes"
        )
        return program

    # =========================================================================
    # Declarations
    # =========================================================================

    def _declare_contracts(self, contract_nodes: List[Mapping]) -> None:
        seen_ids: Set[int] = set()
        for idx, node in enumerate(contract_nodes):
            name = node.get("name")
            if not name or not isinstance(name, str):
                raise MalformedInputError(f"contract #{idx} has no name", self.unit)
            if name in self._contract_kinds:
                raise MalformedInputError(f"duplicate contract name '{name}'", self.unit)

            source_id = node.get("id", idx)
            if not isinstance(source_id, int):
                raise MalformedInputError(f"contract '{name}' has a non-integer id", self.unit)
            if source_id in seen_ids:
                raise MalformedInputError(f"duplicate contract id {source_id} ('{name}')", self.unit)
            seen_ids.add(source_id)

            kind = node.get("contractKind", "contract")
            if node.get("abstract") and kind == "contract":
                kind = "abstract"
            bases = [_name_of(b) for b in node.get("baseContracts", [])]
            if any(not b for b in bases):
                raise MalformedInputError(f"contract '{name}' has an unnamed base contract", self.unit)

            self._contract_kinds[name] = kind
            self._declared[name] = node
            self.contracts.append(
                Contract(
                    id=idx,
                    source_id=source_id,
                    name=name,
                    kind=kind,
                    bases=bases,
                    function_ids=[],
                    modifier_ids=[],
                    state_variable_ids=[],
                    span=self._span(node),
                )
            )

    def _declare_members(self, contract: Contract, node: Mapping) -> None:
        members = node.get("nodes", [])
        if not isinstance(members, list):
            raise MalformedInputError(f"contract '{contract.name}' members must be a list", self.unit)

        for member in members:
            self._require_mapping(member, f"member of '{contract.name}'")
            node_type = member["nodeType"]
            if node_type == "VariableDeclaration":
                self._declare_state_variable(contract, member)
            elif node_type == "FunctionDefinition":
                self._declare_function(contract, member)
            elif node_type == "ModifierDefinition":
                self._declare_modifier(contract, member)
            elif node_type == "EventDefinition":
                contract.events.append(_name_of(member))
            elif node_type == "UsingForDirective":
                contract.using_for.append(_name_of(member))
            elif node_type in ("StructDefinition", "ErrorDefinition", "EnumDefinition"):
                pass
            else:
                debug(f"builder: {contract.name}: skipping member {node_type}")

    def _declare_state_variable(self, contract: Contract, node: Mapping) -> None:
        name = node.get("name")
        if not name:
            raise MalformedInputError(f"state variable without a name in '{contract.name}'", self.unit)
        mutability = node.get("mutability", "mutable")
        var = StateVariable(
            id=len(self.state_variables),
            name=str(name),
            type_name=_type_name(node.get("typeName")),
            visibility=node.get("visibility", "internal"),
            contract_id=contract.id,
            span=self._span(node),
            constant=bool(node.get("constant")) or mutability == "constant",
            immutable=mutability == "immutable",
        )
        self.state_variables.append(var)
        contract.state_variable_ids.append(var.id)
        if isinstance(node.get("value"), Mapping):
            self._raw_state_values.append((var, node["value"]))

    def _declare_function(self, contract: Contract, node: Mapping) -> None:
        kind = node.get("kind")
        if kind is None:
            kind = "constructor" if node.get("isConstructor") else "function"
        name = node.get("name") or _SPECIAL_FUNCTION_NAMES.get(kind)
        if not name:
            raise MalformedInputError(f"function without a name in '{contract.name}'", self.unit)

        default_visibility = "external" if contract.is_interface else "public"
        func = Function(
            id=len(self.functions),
            name=str(name),
            kind=kind,
            visibility=node.get("visibility", default_visibility),
            mutability=node.get("stateMutability", "nonpayable"),
            contract_id=contract.id,
            parameters=self._parameters(node.get("parameters")),
            returns=self._parameters(node.get("returnParameters")),
            modifiers=[],
            body=None,
            span=self._span(node),
            is_virtual=bool(node.get("virtual")),
            overrides=node.get("overrides") is not None,
        )
        self.functions.append(func)
        contract.function_ids.append(func.id)
        self._raw_functions.append((func, node))

    def _declare_modifier(self, contract: Contract, node: Mapping) -> None:
        name = node.get("name")
        if not name:
            raise MalformedInputError(f"modifier without a name in '{contract.name}'", self.unit)
        modifier = Modifier(
            id=len(self.modifiers),
            name=str(name),
            contract_id=contract.id,
            parameters=self._parameters(node.get("parameters")),
            body=None,
            span=self._span(node),
        )
        self.modifiers.append(modifier)
        contract.modifier_ids.append(modifier.id)
        self._raw_modifiers.append((modifier, node))

    def _parameters(self, value: Any) -> List[Parameter]:
        if isinstance(value, Mapping):
            value = value.get("parameters", [])
        if not value:
            return []
        if not isinstance(value, list):
            raise MalformedInputError("parameter list must be a list", self.unit)
        params = []
        for p in value:
            self._require_mapping(p, "parameter", require_type=False)
            params.append(Parameter(name=str(p.get("name") or ""), type_name=_type_name(p.get("typeName"))))
        return params

    def _build_scope(self, contract: Contract) -> _ContractScope:
        """Collect declarations of the contract and every reachable base (cycle-safe, by name)."""
        scope = _ContractScope()
        worklist = [contract.name]
        visited: Set[str] = set()
        while worklist:
            name = worklist.pop()
            if name in visited:
                continue
            visited.add(name)
            other = self._contract_by_name(name)
            if other is None:
                continue
            if other is not contract:
                scope.ancestors.add(name)
            scope.functions.update(self.functions[i].name for i in other.function_ids)
            scope.events.update(other.events)
            for i in other.state_variable_ids:
                var = self.state_variables[i]
                scope.state_types.setdefault(var.name, var.type_name)
            raw = self._declared[name]
            for member in raw.get("nodes", []):
                if member.get("nodeType") == "StructDefinition":
                    scope.structs.add(_name_of(member))
                elif member.get("nodeType") == "ErrorDefinition":
                    scope.errors.add(_name_of(member))
            worklist.extend(other.bases)
        return scope

    def _contract_by_name(self, name: str) -> Optional[Contract]:
        for contract in self.contracts:
            if contract.name == name:
                return contract
        return None

    # =========================================================================
    # Bodies
    # =========================================================================

    def _build_bodies(self) -> None:
        for var, raw_value in self._raw_state_values:
            self._enter(("state_variable", var.id), var.contract_id, [])
            var.value = self._expr(raw_value, -1)

        for modifier, node in self._raw_modifiers:
            self._enter(("modifier", modifier.id), modifier.contract_id, modifier.parameters)
            modifier.body = self._body(node.get("body"))

        for func, node in self._raw_functions:
            self._enter(("function", func.id), func.contract_id, func.parameters + func.returns)
            func.modifiers = [self._modifier_invocation(m) for m in node.get("modifiers", [])]
            func.body = self._body(node.get("body"))

    def _enter(self, owner: Owner, contract_id: int, params: List[Parameter]) -> None:
        self._owner = owner
        self._scope = self._scopes[contract_id]
        self._locals = [{p.name: p.type_name for p in params if p.name}]

    def _body(self, value: Any) -> Optional[Block]:
        if value is None:
            return None
        self._require_mapping(value, "body")
        if value["nodeType"] in ("Block", "UncheckedBlock"):
            return self._stmt(value, -1)  # type: ignore[return-value]
        # lone statement body: wrap it in a synthetic block
        nid = self._alloc(-1)
        stmt = self._stmt(value, nid)
        return self._store(Block(nid, stmt.span, [stmt]))  # type: ignore[return-value]

    def _modifier_invocation(self, value: Any) -> ModifierInvocation:
        if isinstance(value, str):
            return ModifierInvocation(name=value, args=[], span=SourceSpan(self.unit, 0, 0))
        self._require_mapping(value, "modifier invocation", require_type=False)
        args = [self._expr(a, -1) for a in value.get("arguments") or []]
        return ModifierInvocation(name=_name_of(value), args=args, span=self._span(value))

    def _alloc(self, parent: int) -> int:
        node_id = len(self.nodes)
        self.nodes.append(None)
        self.parents.append(parent)
        self.owners.append(self._owner)
        return node_id

    def _store(self, node: Node) -> Node:
        self.nodes[node.id] = node
        return node

    def _stmt(self, node: Any, parent: int) -> Stmt:
        self._require_mapping(node, "statement")
        node_type = node["nodeType"]
        span = self._span(node)
        nid = self._alloc(parent)

        if node_type in ("Block", "UncheckedBlock"):
            self._locals.append({})
            stmts = [self._stmt(s, nid) for s in node.get("statements", [])]
            self._locals.pop()
            return self._store(Block(nid, span, stmts, unchecked=node_type == "UncheckedBlock"))

        if node_type == "ExpressionStatement":
            return self._store(ExprStmt(nid, span, self._expr(node.get("expression"), nid)))

        if node_type == "VariableDeclarationStatement":
            names: List[Optional[str]] = []
            types: List[str] = []
            for decl in node.get("declarations", []):
                if decl is None:
                    names.append(None)
                    types.append("")
                    continue
                self._require_mapping(decl, "variable declaration", require_type=False)
                names.append(decl.get("name"))
                types.append(_type_name(decl.get("typeName")))
            value = node.get("initialValue")
            init = self._expr(value, nid) if value is not None else None
            for name, type_name in zip(names, types):
                if name:
                    self._locals[-1][name] = type_name
            return self._store(VarDecl(nid, span, names, types, init))

        if node_type == "IfStatement":
            cond = self._expr(node.get("condition"), nid)
            then_branch = self._stmt(node.get("trueBody"), nid)
            false_body = node.get("falseBody")
            else_branch = self._stmt(false_body, nid) if false_body is not None else None
            return self._store(If(nid, span, cond, then_branch, else_branch))

        if node_type == "ForStatement":
            self._locals.append({})
            init_node = node.get("initializationExpression")
            init = self._stmt(init_node, nid) if init_node is not None else None
            cond_node = node.get("condition")
            cond = self._expr(cond_node, nid) if cond_node is not None else None
            step_node = node.get("loopExpression")
            step = None
            if step_node is not None:
                if isinstance(step_node, Mapping) and step_node.get("nodeType") == "ExpressionStatement":
                    step_node = step_node.get("expression")
                step = self._expr(step_node, nid)
            body = self._stmt(node.get("body"), nid)
            self._locals.pop()
            return self._store(Loop(nid, span, "for", cond, body, init=init, step=step))

        if node_type in ("WhileStatement", "DoWhileStatement"):
            kind = "while" if node_type == "WhileStatement" else "do"
            cond = self._expr(node.get("condition"), nid)
            body = self._stmt(node.get("body"), nid)
            return self._store(Loop(nid, span, kind, cond, body))

        if node_type == "Return":
            value = node.get("expression")
            return self._store(Return(nid, span, self._expr(value, nid) if value is not None else None))

        if node_type == "EmitStatement":
            return self._store(Emit(nid, span, self._expr(node.get("eventCall"), nid)))

        if node_type == "RevertStatement":
            value = node.get("errorCall")
            return self._store(Revert(nid, span, self._expr(value, nid) if value is not None else None))

        if node_type == "InlineAssembly":
            text = node.get("operations")
            if not isinstance(text, str):
                text = json.dumps(node.get("AST", {}), sort_keys=True)
            return self._store(InlineAssembly(nid, span, text))

        if node_type == "PlaceholderStatement":
            return self._store(Placeholder(nid, span))

        if node_type == "TryStatement":
            call = self._expr(node.get("externalCall"), nid)
            clauses = []
            for clause in node.get("clauses", []):
                self._require_mapping(clause, "try clause", require_type=False)
                self._locals.append({p.name: p.type_name for p in self._parameters(clause.get("parameters")) if p.name})
                clauses.append(self._stmt(clause.get("block"), nid))
                self._locals.pop()
            return self._store(Try(nid, span, call, clauses))

        if node_type in ("Break", "Continue"):
            return self._store(Jump(nid, span, node_type.lower()))

        debug(f"builder: unknown statement {node_type} at {span}")
        return self._store(UnknownStmt(nid, span, node_type))

    def _expr(self, node: Any, parent: int) -> Expr:
        self._require_mapping(node, "expression")
        node_type = node["nodeType"]

        # `f{value: v}(...)` options wrap the callee; unwrap them into the enclosing Call
        if node_type == "FunctionCallOptions":
            return self._expr(node.get("expression"), parent)

        span = self._span(node)
        nid = self._alloc(parent)

        if node_type == "Identifier":
            return self._store(Identifier(nid, span, str(node.get("name", ""))))

        if node_type == "MemberAccess":
            base = self._expr(node.get("expression"), nid)
            return self._store(MemberAccess(nid, span, base, str(node.get("memberName", ""))))

        if node_type == "IndexAccess":
            base = self._expr(node.get("baseExpression"), nid)
            index_node = node.get("indexExpression")
            index = self._expr(index_node, nid) if index_node is not None else None
            return self._store(IndexAccess(nid, span, base, index))

        if node_type == "Literal":
            value = node.get("value")
            if value is None:
                value = node.get("hexValue", "")
            return self._store(Literal(nid, span, str(value), str(node.get("kind", "number"))))

        if node_type == "BinaryOperation":
            left = self._expr(node.get("leftExpression"), nid)
            right = self._expr(node.get("rightExpression"), nid)
            return self._store(BinaryOp(nid, span, str(node.get("operator", "")), left, right))

        if node_type == "UnaryOperation":
            operand = self._expr(node.get("subExpression"), nid)
            return self._store(UnaryOp(nid, span, str(node.get("operator", "")), operand, bool(node.get("prefix", True))))

        if node_type == "Assignment":
            target = self._expr(node.get("leftHandSide"), nid)
            value = self._expr(node.get("rightHandSide"), nid)
            return self._store(Assignment(nid, span, str(node.get("operator", "=")), target, value))

        if node_type == "FunctionCall":
            return self._store(self._call(node, nid, span))

        if node_type == "Conditional":
            cond = self._expr(node.get("condition"), nid)
            true_expr = self._expr(node.get("trueExpression"), nid)
            false_expr = self._expr(node.get("falseExpression"), nid)
            return self._store(Conditional(nid, span, cond, true_expr, false_expr))

        if node_type == "TupleExpression":
            components = [self._expr(c, nid) if c is not None else None for c in node.get("components", [])]
            return self._store(TupleExpr(nid, span, components))

        if node_type == "NewExpression":
            return self._store(NewExpr(nid, span, _type_name(node.get("typeName"))))

        if node_type == "ElementaryTypeNameExpression":
            return self._store(ElementaryType(nid, span, _type_name(node.get("typeName"))))

        return self._store(Unknown(nid, span, node_type))

    def _call(self, node: Mapping, nid: int, span: SourceSpan) -> Call:
        callee_node = node.get("expression")
        self._require_mapping(callee_node, "call expression")

        value = gas = None
        if callee_node["nodeType"] == "FunctionCallOptions":
            option_names = callee_node.get("names", [])
            for opt_name, opt_value in zip(option_names, callee_node.get("options", [])):
                if opt_name == "value":
                    value = self._expr(opt_value, nid)
                elif opt_name == "gas":
                    gas = self._expr(opt_value, nid)

        callee = self._expr(callee_node, nid)
        args = [self._expr(a, nid) for a in node.get("arguments", [])]
        kind = self._classify_call(callee, args)
        return Call(nid, span, callee, args, kind, names=list(node.get("names", [])), value=value, gas=gas)

    # =========================================================================
    # Call classification
    # =========================================================================

    def _classify_call(self, callee: Expr, args: List[Expr]) -> CallKind:
        if isinstance(callee, ElementaryType):
            return CallKind.TYPE_CONVERSION
        if isinstance(callee, NewExpr):
            return CallKind.CONTRACT_CREATION
        if isinstance(callee, Identifier):
            return self._classify_named_call(callee.name)
        if isinstance(callee, MemberAccess):
            return self._classify_member_call(callee, args)
        return CallKind.INTERNAL

    def _classify_named_call(self, name: str) -> CallKind:
        scope = self._scope
        if name in BUILTIN_FUNCTIONS:
            return CallKind.BUILTIN
        if name == "payable":
            return CallKind.TYPE_CONVERSION
        if name in scope.events:
            return CallKind.EVENT
        if name in scope.errors:
            return CallKind.BUILTIN
        if name in self._contract_kinds or name in scope.structs:
            return CallKind.TYPE_CONVERSION
        if name in scope.functions:
            return CallKind.INTERNAL
        if self._lookup_type(name) is not None:
            # calling a function-typed variable
            return CallKind.INTERNAL
        if name[:1].isupper():
            # cast to an interface declared outside this unit: IERC20(token)
            return CallKind.TYPE_CONVERSION
        return CallKind.INTERNAL

    def _classify_member_call(self, callee: MemberAccess, args: List[Expr]) -> CallKind:
        base = callee.base
        member = callee.member

        if isinstance(base, Identifier):
            if base.name == "super":
                return CallKind.SUPER
            if base.name == "this":
                return CallKind.EXTERNAL
        if member in LOW_LEVEL_MEMBERS:
            return CallKind.LOW_LEVEL
        if member in VALUE_TRANSFER_MEMBERS and len(args) == 1:
            return CallKind.LOW_LEVEL

        if isinstance(base, Identifier):
            if base.name in BUILTIN_RECEIVERS:
                return CallKind.BUILTIN
            kind = self._contract_kinds.get(base.name)
            if kind == "library" or base.name in KNOWN_LIBRARIES:
                return CallKind.LIBRARY
            if kind is not None and base.name in self._scope.ancestors:
                # explicit base call: Base.f()
                return CallKind.INTERNAL

        base_type = self._static_type(base)
        if base_type is None:
            return CallKind.EXTERNAL
        if member in ARRAY_MEMBERS and (base_type.endswith("]") or base_type.startswith("bytes")):
            return CallKind.BUILTIN
        if is_elementary_type(base_type):
            # `using Lib for T` style call on a value type
            return CallKind.LIBRARY
        if base_type.startswith("struct "):
            return CallKind.LIBRARY
        return CallKind.EXTERNAL

    def _lookup_type(self, name: str) -> Optional[str]:
        for frame in reversed(self._locals):
            if name in frame:
                return frame[name]
        return self._scope.state_types.get(name)

    def _static_type(self, expr: Expr) -> Optional[str]:
        """Best-effort declared type of an expression; None when unknown."""
        if isinstance(expr, Identifier):
            if expr.name in self._contract_kinds:
                return expr.name
            return self._lookup_type(expr.name)
        if isinstance(expr, IndexAccess):
            base_type = self._static_type(expr.base)
            if base_type is None:
                return None
            value_type = mapping_value_type(base_type)
            if value_type is not None:
                return value_type
            if base_type.endswith("]"):
                return base_type[: base_type.rfind("[")].strip()
            return None
        if isinstance(expr, Call) and expr.kind == CallKind.TYPE_CONVERSION:
            return expr.name
        if isinstance(expr, MemberAccess) and isinstance(expr.base, Identifier):
            if expr.base.name == "msg" and expr.member == "sender":
                return "address"
            if expr.base.name == "block" or expr.base.name == "tx":
                return "uint256" if expr.member != "origin" else "address"
        return None

    # =========================================================================
    # Validation helpers
    # =========================================================================

    def _require_mapping(self, node: Any, what: str, require_type: bool = True) -> None:
        if not isinstance(node, Mapping):
            raise MalformedInputError(f"{what} is not a mapping: {type(node).__name__}", self.unit)
        if require_type and not isinstance(node.get("nodeType"), str):
            raise MalformedInputError(f"{what} has no nodeType", self.unit)

    def _span(self, node: Mapping) -> SourceSpan:
        src = node.get("src")
        if src is None:
            return SourceSpan(self.unit, 0, 0)
        try:
            start, length, _ = parse_src(str(src))
        except ValueError as e:
            raise MalformedInputError(f"invalid src attribute: {e}", self.unit) from e
        line = column = 0
        if self._lines is not None:
            line, column = self._lines.line_col(start)
        return SourceSpan(self.unit, start, start + length, line, column)

    def _validate(self, program: ProgramModel) -> None:
        """Every node stored, every parent precedes its child (acyclic), every owner resolvable."""
        for node_id, node in enumerate(program.nodes):
            if node is None or node.id != node_id:
                raise MalformedInputError(f"node {node_id} was never attached to the tree", self.unit)
            parent = program.parents[node_id]
            if parent >= node_id:
                raise MalformedInputError(f"node {node_id} has an invalid parent {parent}", self.unit)
            if parent >= 0 and program.owners[parent] != program.owners[node_id]:
                raise MalformedInputError(f"node {node_id} crosses ownership boundaries", self.unit)
            kind, owner_id = program.owners[node_id]
            arena = {
                "function": program.functions,
                "modifier": program.modifiers,
                "state_variable": program.state_variables,
            }[kind]
            if not 0 <= owner_id < len(arena):
                raise MalformedInputError(f"node {node_id} has no owner", self.unit)


def build_program(tree: Any, unit: Optional[str] = None) -> ProgramModel:
    """Build the Program Model of one compilation unit. Raises MalformedInputError."""
    return ProgramBuilder(tree, unit).build()


def load_program(path: str) -> ProgramModel:
    """Load a JSON parse tree from disk and build its Program Model."""
    try:
        tree = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise MalformedInputError(f"cannot read parse tree: {e.strerror or e}", path) from e
    except json.JSONDecodeError as e:
        raise MalformedInputError(f"invalid JSON: {e}", path) from e
    return build_program(tree, unit=path)

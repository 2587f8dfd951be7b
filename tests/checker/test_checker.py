"""Type and Effect Checker Tests — CHK-001 through CHK-008.

Every test parses a small contract, runs Pass 1 and looks at the signature
table or the diagnostics it produced.
"""

import pytest

from clar2wasm.errors import ErrorKind
from clar2wasm.parser import parse
from clar2wasm.pass1_check import check
from clar2wasm.principal import parse_principal
from clar2wasm.types import (
    BOOL, INT, NO_TYPE, UINT, BufferType, ListType, OptionalType, ResponseType,
    StringType, TupleType,
)


def _check(source, contract=None):
    program = parse(source)
    assert program.diagnostics == [], [d.to_dict() for d in program.diagnostics]
    return check(program, contract=contract)


def _returns(source, name):
    result = _check(source)
    assert result.ok, [d.to_dict() for d in result.diagnostics]
    return result.signatures.functions[name].return_type


def _position(source, text):
    """1-based (line, column) of the first occurrence of ``text``."""
    index = source.index(text)
    line = source.count("\n", 0, index) + 1
    column = index - (source.rfind("\n", 0, index) + 1) + 1
    return line, column


def _start(diag):
    return diag.span.start_line, diag.span.start_column


class TestCHK001:
    """CHK-001: Literal and compound types.
    Priority: P0
    """

    @pytest.mark.parametrize("body, expected", [
        ("1", INT),
        ("u1", UINT),
        ("true", BOOL),
        ("0x010203", BufferType(3)),
        ('"abc"', StringType(3, False)),
        ('u"ab"', StringType(2, True)),
        ("(list 1 2 3)", ListType(INT, 3)),
        ("(some u1)", OptionalType(UINT)),
        ("none", OptionalType(NO_TYPE)),
        ("(ok 1)", ResponseType(INT, NO_TYPE)),
        ("{b: true, a: 1}", TupleType((("a", INT), ("b", BOOL)))),
    ])
    def test_literal_types(self, body, expected):
        """priority_p0: Literals type to their exact size."""
        assert _returns(f"(define-read-only (f) {body})", "f") == expected

    def test_if_branches_widen(self):
        """priority_p0: Branches merge to their least supertype."""
        assert _returns("(define-read-only (f (c bool)) (if c 0x01 0x0102))", "f") == BufferType(2)

    def test_list_of_lists_widen(self):
        """priority_p1: Element bounds widen to the largest element."""
        ret = _returns("(define-read-only (f) (list (list 1) (list 1 2 3)))", "f")
        assert ret == ListType(ListType(INT, 3), 2)

    def test_early_returns_merge(self):
        """priority_p0: asserts! throws are merged into the function's response type."""
        source = """
(define-public (f (x uint))
  (begin
    (asserts! (> x u0) (err u1))
    (ok x)))
"""
        assert _returns(source, "f") == ResponseType(UINT, UINT)

    def test_let_and_match(self):
        """priority_p1: let bindings and match arms are typed."""
        source = """
(define-read-only (f (o (optional uint)))
  (let ((d u5))
    (match o v (+ v d) d)))
"""
        assert _returns(source, "f") == UINT


class TestCHK002:
    """CHK-002: Sequence bounds are enforced at the offending literal.
    Priority: P0
    """

    def test_data_var_initial_value(self):
        """priority_p0: A 3-byte literal in a (buff 2) slot is a bound error."""
        source = "(define-data-var v (buff 2) 0x010203)"
        result = _check(source)
        (diag,) = result.diagnostics
        assert diag.kind == ErrorKind.TYPE_ERROR
        assert diag.details["bound_violation"] is True
        assert _start(diag) == _position(source, "0x010203")
        assert (diag.span.end_line, diag.span.end_column) == (1, _position(source, "0x010203")[1] + 8)

    def test_argument_bound(self):
        """priority_p0: Passing a too-long literal to a function flags the literal."""
        source = """(define-private (f (b (buff 2))) (len b))
(define-read-only (g) (f 0x010203))"""
        result = _check(source)
        (diag,) = result.diagnostics
        assert diag.details.get("bound_violation") is True
        assert _start(diag) == _position(source, "0x010203")

    def test_string_bound(self):
        """priority_p1: String bounds behave like buffer bounds."""
        source = '(define-data-var name (string-ascii 3) "abcd")'
        (diag,) = _check(source).diagnostics
        assert diag.details.get("bound_violation") is True
        assert _start(diag) == _position(source, '"abcd"')

    def test_shorter_value_is_admitted(self):
        """priority_p0: Size-widening is allowed."""
        result = _check("(define-data-var v (buff 4) 0x01)")
        assert result.ok

    def test_kind_mismatch_is_not_a_bound_error(self):
        """priority_p1: Different sequence kinds give a plain type error."""
        (diag,) = _check('(define-data-var v (buff 4) "ab")').diagnostics
        assert diag.kind == ErrorKind.TYPE_ERROR
        assert "bound_violation" not in diag.details


class TestCHK003:
    """CHK-003: Arity errors are reported at the call site.
    Priority: P0
    """

    def test_user_function_arity(self):
        """priority_p0: Too many arguments to a user function."""
        source = """(define-private (f (a int)) a)
(define-read-only (g) (f 1 2))"""
        (diag,) = _check(source).diagnostics
        assert _start(diag) == _position(source, "(f 1 2)")
        assert diag.details["expected_args"] == "1"
        assert diag.details["actual_args"] == 2

    def test_builtin_arity(self):
        """priority_p0: Built-ins with the wrong argument count."""
        source = "(define-read-only (g) (not true false))"
        (diag,) = _check(source).diagnostics
        assert diag.details["callee"] == "not"
        assert _start(diag) == _position(source, "(not true false)")

    def test_wrapper_arity(self):
        """priority_p1: (ok) with no argument is an arity error, not a literal."""
        source = "(define-public (g) (ok))"
        diags = _check(source).diagnostics
        assert any(d.details.get("callee") == "ok" for d in diags)

    def test_unary_minus(self):
        """priority_p1: (- x) takes one argument; (-) takes none and is rejected."""
        assert _returns("(define-read-only (f (x int)) (- x))", "f") == INT
        assert _returns("(define-read-only (f (x uint)) (- x))", "f") == UINT
        source = "(define-read-only (f) (-))"
        (diag,) = _check(source).diagnostics
        assert diag.details["callee"] == "-"
        assert _start(diag) == _position(source, "(-)")


class TestCHK004:
    """CHK-004: Forward references and recursion.
    Priority: P0
    """

    def test_forward_reference(self):
        """priority_p0: A function may call one defined later."""
        source = """
(define-read-only (a) (+ (b) u1))
(define-private (b) u41)
"""
        result = _check(source)
        assert result.ok
        assert result.signatures.functions["a"].return_type == UINT

    def test_direct_recursion(self):
        """priority_p0: Self-recursion is rejected."""
        source = "(define-private (f (n int)) (f n))"
        diags = _check(source).diagnostics
        assert len(diags) == 1
        assert "Recursive" in diags[0].message

    def test_mutual_recursion(self):
        """priority_p1: Cycles through several functions are rejected."""
        source = """
(define-private (a) (b))
(define-private (b) (a))
"""
        diags = _check(source).diagnostics
        assert any(d.details.get("cycle") == "a -> b -> a" for d in diags)

    def test_constant_before_definition(self):
        """priority_p1: Constants are evaluated in order."""
        source = """
(define-constant a (+ b 1))
(define-constant b 1)
"""
        diags = _check(source).diagnostics
        assert len(diags) == 1
        assert "before its definition" in diags[0].message


class TestCHK005:
    """CHK-005: Effects.
    Priority: P0
    """

    def test_write_in_read_only(self):
        """priority_p0: var-set inside a read-only function."""
        source = """(define-data-var c uint u0)
(define-read-only (f) (var-set c u1))"""
        (diag,) = _check(source).diagnostics
        assert diag.details["operation"] == "var-set"

    def test_write_through_private_call(self):
        """priority_p0: Calling a writing private function from a read-only one."""
        source = """(define-data-var c uint u0)
(define-private (bump) (var-set c (+ (var-get c) u1)))
(define-read-only (f) (bump))"""
        (diag,) = _check(source).diagnostics
        assert diag.details["operation"] == "bump"
        assert _start(diag) == _position(source, "(bump))")

    def test_write_in_public(self):
        """priority_p0: Public functions may write."""
        source = """(define-map m uint uint)
(define-public (f (k uint)) (ok (map-set m k u1)))"""
        result = _check(source)
        assert result.ok
        assert result.signatures.functions["f"].writes


class TestCHK006:
    """CHK-006: Function and definition rules.
    Priority: P1
    """

    def test_public_must_return_response(self):
        """priority_p0: A public function returning a plain value is an error."""
        diags = _check("(define-public (f) u1)").diagnostics
        assert len(diags) == 1
        assert "must return a response" in diags[0].message

    def test_duplicate_definition(self):
        """priority_p1: A name may be defined once."""
        diags = _check("(define-constant a 1)\n(define-constant a 2)").diagnostics
        assert any("already defined" in d.message for d in diags)

    def test_reserved_name(self):
        """priority_p1: Built-in names cannot be redefined."""
        diags = _check("(define-private (map) 1)").diagnostics
        assert any("reserved" in d.message for d in diags)

    def test_module_export_names(self):
        """priority_p2: Exported functions cannot shadow the memory or stack-pointer exports."""
        diags = _check("(define-read-only (memory) u1)").diagnostics
        assert any("exported by every module" in d.message for d in diags)
        assert _check("(define-private (stack-pointer) u1)").ok

    def test_unresolved_identifier(self):
        """priority_p0: Unknown names are reported at their span."""
        source = "(define-read-only (f) nope)"
        (diag,) = _check(source).diagnostics
        assert diag.message == "Unresolved identifier 'nope'"
        assert _start(diag) == _position(source, "nope")

    def test_unchecked_intermediate_response(self):
        """priority_p1: A response value may not be silently dropped in begin."""
        diags = _check("(define-read-only (f) (begin (ok 1) true))").diagnostics
        assert any("Intermediate response" in d.message for d in diags)

    def test_mixed_integer_kinds(self):
        """priority_p0: int and uint do not mix in arithmetic."""
        source = "(define-read-only (f) (+ 1 u1))"
        (diag,) = _check(source).diagnostics
        assert _start(diag) == _position(source, "u1)")


class TestCHK007:
    """CHK-007: Several independent errors are all collected.
    Priority: P0
    """

    def test_errors_across_functions(self):
        """priority_p0: One error per broken function, nothing lost."""
        source = """(define-read-only (a) (+ 1 u1))
(define-read-only (b) missing)
(define-public (c) u1)
(define-read-only (d) (not 1))
"""
        diags = _check(source).diagnostics
        assert sorted({d.span.start_line for d in diags}) == [1, 2, 3, 4]

    def test_poison_does_not_cascade(self):
        """priority_p1: A caller of a broken function gets no extra error."""
        source = """(define-private (broken) missing)
(define-read-only (caller) (broken))"""
        diags = _check(source).diagnostics
        assert len(diags) == 1


class TestCHK008:
    """CHK-008: Traits.
    Priority: P2
    """

    def test_local_trait_implementation(self):
        """priority_p2: A contract implementing its own trait is checked against it."""
        contract = parse_principal(".token")
        source = """
(define-trait getter ((get-value () (response uint uint))))
(impl-trait .token.getter)
(define-read-only (get-value) (ok u1))
"""
        assert _check(source, contract=contract).ok

    def test_missing_trait_method(self):
        """priority_p2: Every trait method must be implemented."""
        contract = parse_principal(".token")
        source = """
(define-trait getter ((get-value () (response uint uint))))
(impl-trait .token.getter)
"""
        diags = _check(source, contract=contract).diagnostics
        assert any("not implemented" in d.message for d in diags)

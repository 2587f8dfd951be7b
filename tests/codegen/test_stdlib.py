"""Runtime Library Tests — STD-001 through STD-003."""

import pytest

from clar2wasm import stdlib
from clar2wasm.abi import HOST_MODULE, host_function
from clar2wasm.wasm import ValType
from clar2wasm.wasm.instructions import check_nesting
from clar2wasm.wasm.module import Import, Module

I32, I64 = ValType.I32, ValType.I64
U128 = (I64, I64)


class TestSTD001:
    """STD-001: Helper dependencies.
    Priority: P0
    """

    def test_mul_int_closure(self):
        """priority_p0: Signed multiplication pulls in the unsigned product and negation."""
        assert set(stdlib.closure(["mul-int"])) == {"mul-int", "mul-uint", "mul-wide", "neg"}

    def test_division_closure(self):
        """priority_p1: Division is built on the shared long division and ge-uint."""
        assert set(stdlib.closure(["div-uint"])) == {"div-uint", "divmod-uint", "ge-uint"}

    def test_closure_is_ordered_and_unique(self):
        """priority_p1: Output follows definition order, whatever the request order."""
        names = stdlib.closure(["mod-int", "div-int", "mod-int"])
        assert len(names) == len(set(names))
        order = stdlib.helper_names()
        assert names == sorted(names, key=order.index)

    def test_unknown_helper(self):
        """priority_p1: Asking for a helper that does not exist fails loudly."""
        with pytest.raises(KeyError):
            stdlib.closure(["pow-int"])

    def test_runtime_error_needed(self):
        """priority_p0: Trapping helpers require the runtime_error import."""
        assert stdlib.needs_runtime_error(["add-uint"])
        assert stdlib.needs_runtime_error(["memeq", "mul-int"])
        assert not stdlib.needs_runtime_error(["lt-int", "memeq", "buff-to-uint-be"])
        assert not stdlib.needs_runtime_error([])


class TestSTD002:
    """STD-002: Helper signatures.
    Priority: P0
    """

    @pytest.mark.parametrize("name", ["add-int", "sub-uint", "mul-int", "div-uint", "mod-int"])
    def test_arithmetic_signature(self, name):
        """priority_p0: Arithmetic takes two (low, high) pairs and returns one."""
        fn = stdlib.build_helper(name)
        assert fn.name == f"stdlib.{name}"
        assert fn.params == U128 + U128
        assert fn.results == U128
        assert fn.export is None

    @pytest.mark.parametrize("name", stdlib.VERIFIED_HELPERS[4:])
    def test_comparison_signature(self, name):
        """priority_p0: Comparisons return a single i32."""
        assert stdlib.build_helper(name).results == (I32,)

    def test_divmod_returns_both(self):
        """priority_p1: The shared division returns quotient and remainder."""
        assert stdlib.build_helper("divmod-uint").results == U128 + U128

    def test_reserve_signature(self):
        """priority_p1: The arena growth helper takes the new end address and returns nothing."""
        fn = stdlib.build_helper("reserve")
        assert (fn.params, fn.results) == ((I32,), ())
        assert check_nesting(fn.body)
        assert not stdlib.needs_runtime_error(["reserve"])


class TestSTD003:
    """STD-003: Helpers assemble into a module.
    Priority: P1
    """

    def test_every_helper_is_balanced(self):
        """priority_p1: Each body closes every block it opens."""
        for name in stdlib.helper_names():
            assert check_nesting(stdlib.build_helper(name).body), name

    def test_all_helpers_encode(self):
        """priority_p1: The full library serialises without unresolved calls."""
        module = Module()
        module.add_function(stdlib.build_helper("add-uint"))
        for fn in stdlib.build([n for n in stdlib.helper_names() if n != "add-uint"]):
            module.add_function(fn)
        host = host_function("runtime_error")
        module.add_import(Import(HOST_MODULE, host.name, host.params, host.results))
        assert module.to_bytes().startswith(b"\x00asm")

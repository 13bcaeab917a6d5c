import pytest

from interpreter import VM, MiniPyRuntimeError, StepResult, VMOptions, compile_source
from values import TYPE_FUNC, array, boolean, none_value, number, obj, string


def variables(vm):
    return {name: value.to_python() for name, value in vm.get_variables().items() if value.type != TYPE_FUNC}


class TestBasics:
    def test_print_sum(self, run_vm):
        _, output = run_vm("print(1+2)")
        assert output == ["3"]

    def test_prints_in_source_order(self, run_vm):
        _, output = run_vm('print("a")\nprint(2.5, True)\nprint([1, "b"], {"k": 1})\nprint()')
        assert output == ["a", "2.5 true", '[1, "b"] {"k": 1}', ""]

    def test_loop_scenario(self, load_vm):
        vm, _ = load_vm("x = 0\nrepeat 3 times:\n    x = x + 1")
        result = vm.run()
        assert result.done is True
        assert vm.get_variables()["x"] == number(3)
        assert vm.get_status() == "done"

    def test_slice_scenario(self, run_vm):
        vm, _ = run_vm("a = [1,2,3,4,5]\nb = a[1:4]\nc = a[-1]")
        assert variables(vm)["b"] == [2.0, 3.0, 4.0]
        assert variables(vm)["c"] == 5.0

    def test_empty_program_finishes_in_one_step(self, load_vm):
        vm, _ = load_vm("")
        assert vm.step() == StepResult(current_line=None, done=True)

    def test_step_without_program(self):
        assert VM().step().done is True

    def test_chinese_program(self, run_vm):
        source = (
            "总和 = 0\n"
            "对于 i 在 范围(1, 4):\n"
            "    总和 += i\n"
            "如果 总和 == 6:\n"
            "    打印(\"好\")\n"
            "否则:\n"
            "    打印(\"坏\")\n"
        )
        vm, output = run_vm(source)
        assert output == ["好"]
        assert variables(vm)["总和"] == 6.0

    def test_mixed_dialects(self, run_vm):
        _, output = run_vm("x = 0\nwhile x < 2:\n    x += 1\n如果 x == 2 and 真:\n    print(x)")
        assert output == ["2"]


class TestStepping:
    def test_run_all_returns_every_step(self, load_vm):
        vm, output = load_vm("x = 1\nprint(x)")
        assert vm.run_all() == [
            StepResult(current_line=2, done=False),
            StepResult(current_line=None, done=True),
        ]
        assert output == ["1"]

    def test_one_statement_per_step(self, load_vm):
        vm, _ = load_vm("x = 1\ny = 2\nz = 3")
        assert vm.get_current_line() is None
        assert vm.step() == StepResult(current_line=2, done=False)
        assert vm.step() == StepResult(current_line=3, done=False)
        assert vm.step() == StepResult(current_line=None, done=True)

    def test_loop_condition_check_is_a_step(self, load_vm):
        vm, _ = load_vm("x = 0\nwhile x < 2:\n    x += 1\nprint(x)")
        lines = []
        while True:
            result = vm.step()
            lines.append(result.current_line)
            if result.done:
                break
        # while entry, body, re-check, body, failed re-check
        assert lines == [2, 3, 2, 3, 2, 4, None]

    def test_repeat_zero_times(self, run_vm):
        vm, _ = run_vm("x = 0\nrepeat 0 times:\n    x = 1")
        assert variables(vm)["x"] == 0.0

    def test_if_without_match_skips_block(self, load_vm):
        vm, _ = load_vm("if False:\n    x = 1\ny = 2")
        assert vm.step().current_line == 3

    def test_range_with_negative_step(self, run_vm):
        _, output = run_vm("for i in range(3, 0, -1):\n    print(i)")
        assert output == ["3", "2", "1"]

    def test_range_counter_stays_bound_after_loop(self, run_vm):
        vm, _ = run_vm("for i in range(3):\n    pass")
        assert variables(vm)["i"] == 2.0

    def test_for_each_over_string_and_array(self, run_vm):
        _, output = run_vm('for ch in "ab":\n    print(ch)\nfor v in [1, [2]]:\n    print(v)')
        assert output == ["a", "b", "1", "[2]"]

    def test_for_each_iterates_over_a_snapshot(self, run_vm):
        vm, _ = run_vm("a = [1, 2]\nn = 0\nfor v in a:\n    append(a, v)\n    n += 1")
        assert variables(vm)["n"] == 2.0
        assert len(variables(vm)["a"]) == 4

    def test_break_and_continue(self, run_vm):
        source = (
            "out = []\n"
            "for i in range(10):\n"
            "    if i % 2 == 1:\n"
            "        continue\n"
            "    if i > 6:\n"
            "        break\n"
            "    append(out, i)\n"
        )
        vm, _ = run_vm(source)
        assert variables(vm)["out"] == [0.0, 2.0, 4.0, 6.0]

    def test_break_inside_nested_if_in_while(self, run_vm):
        vm, _ = run_vm("x = 0\nwhile True:\n    x += 1\n    if x == 5:\n        break\ny = x")
        assert variables(vm)["y"] == 5.0


class TestFunctions:
    def test_call_and_return(self, run_vm):
        vm, output = run_vm("def add(a, b):\n    return a + b\nprint(add(2, 3))")
        assert output == ["5"]

    def test_call_entry_is_its_own_step(self, load_vm):
        vm, _ = load_vm("def f(n):\n    return n * 2\nx = f(4)\ny = x")
        assert vm.step().current_line == 3  # def
        assert vm.step().current_line == 2  # entered f
        assert vm.get_variables() == {"n": number(4)}
        names = [entry.name for entry in vm.get_call_stack_for_visualization()]
        assert names == ["<main>", "f"]
        assert vm.get_call_stack_for_visualization()[1].line == 3
        assert vm.step().current_line == 3  # returned, x = f(4) resumes
        assert vm.step().current_line == 4
        assert vm.get_variables()["x"] == number(8)

    def test_side_effects_before_a_call_run_once(self, run_vm):
        source = (
            "def f():\n"
            "    print(\"in f\")\n"
            "    return 1\n"
            "x = [randint(1, 1000), f(), randint(1, 1000)]\n"
            "print(x[0] > 0)\n"
        )
        vm, output = run_vm(source, seed=7)
        assert output == ["in f", "true"]

    def test_recursion(self, run_vm):
        source = "def fact(n):\n    if n <= 1:\n        return 1\n    return n * fact(n - 1)\nprint(fact(6))"
        _, output = run_vm(source)
        assert output == ["720"]

    def test_function_without_return_gives_none(self, run_vm):
        _, output = run_vm("def f():\n    x = 1\nprint(f())")
        assert output == ["null"]

    def test_locals_do_not_leak(self, run_vm):
        vm, _ = run_vm("x = 1\ndef f():\n    x = 2\n    return x\ny = f()")
        assert variables(vm) == {"x": 1.0, "y": 2.0}

    def test_functions_read_globals(self, run_vm):
        _, output = run_vm("base = 10\ndef f(n):\n    return base + n\nprint(f(1))")
        assert output == ["11"]

    def test_return_inside_loop(self, run_vm):
        source = "def first_even(a):\n    for v in a:\n        if v % 2 == 0:\n            return v\n    return -1\nprint(first_even([3, 5, 8, 9]))"
        _, output = run_vm(source)
        assert output == ["8"]

    def test_recursion_limit(self, run_vm):
        with pytest.raises(MiniPyRuntimeError, match="recursion"):
            run_vm("def f(n):\n    return f(n + 1)\nf(0)", max_call_depth=20)

    def test_arity_mismatch(self, run_vm):
        with pytest.raises(MiniPyRuntimeError) as info:
            run_vm("def f(a):\n    return a\nf(1, 2)")
        assert info.value.line == 3


class TestOperators:
    @pytest.mark.parametrize(
        "expression, expected",
        [
            ("7 // 2", 3.0),
            ("-7 // 2", -4.0),
            ("-7 % 3", -1.0),
            ("2 ** 10", 1024.0),
            ("2 ** -1", 0.5),
            ("-2 ** 2", -4.0),
            ('"ab" + 1', "ab1"),
            ('"ab" * 3', "ababab"),
            ("[1] + [2]", [1.0, 2.0]),
            ("1 == 1.0", True),
            ('1 == "1"', False),
            ("[1, [2]] == [1, [2]]", True),
            ('"b" in "abc"', True),
            ("3 in [1, 2]", False),
            ('"k" in {"k": 1}', True),
            ("0 or 5", 5.0),
            ('"" and 5', ""),
            ("not []", True),
            ("len(\"héllo\")", 5.0),
        ],
    )
    def test_expression(self, run_vm, expression, expected):
        vm, _ = run_vm(f"r = {expression}")
        assert variables(vm)["r"] == expected

    @pytest.mark.parametrize(
        "expression, fragment",
        [
            ("1 / 0", "Division by zero"),
            ("1 % 0", "Division by zero"),
            ("[1] - 1", "needs numbers"),
            ('"a" < "b"', "compare"),
            ("[1, 2][5]", "out of range"),
            ('"abc" * 1.5', "repeated"),
            ("{}.missing", "no field"),
            ("(-8) ** 0.5", "power"),
            ("-[1]", "expects a number"),
            ("10 ** 300 * 10 ** 300 % 2", "finite numbers"),
            ('"a" * 10 ** 300', "String too long"),
        ],
    )
    def test_runtime_errors(self, run_vm, expression, fragment):
        with pytest.raises(MiniPyRuntimeError) as info:
            run_vm(f"r = {expression}")
        assert fragment in info.value.message
        assert info.value.line == 1

    def test_aliasing_is_by_reference(self, run_vm):
        vm, _ = run_vm("a = [1]\nb = a\nappend(b, 2)\no = {}\np = o\np.x = 3\no[\"y\"] = 4")
        values = variables(vm)
        assert values["a"] == [1.0, 2.0]
        assert values["o"] == {"x": 3.0, "y": 4.0}

    def test_index_assignment_with_negative_index(self, run_vm):
        vm, _ = run_vm("a = [1, 2, 3]\na[-1] = 9")
        assert variables(vm)["a"] == [1.0, 2.0, 9.0]

    def test_slices_clamp(self, run_vm):
        vm, _ = run_vm('a = [1, 2, 3][1:99]\nb = "hello"[-3:]\nc = [1][5:]')
        assert variables(vm) == {"a": [2.0, 3.0], "b": "llo", "c": []}


class TestLibrary:
    @pytest.mark.parametrize(
        "expression, expected",
        [
            ("abs(-3)", 3.0),
            ("min(4, 2, 8)", 2.0),
            ("max([4, 2, 8])", 8.0),
            ("sum([1, 2, 3.5])", 6.5),
            ("round(2.5)", 3.0),
            ("round(3.14159, 2)", 3.14),
            ("sqrt(16)", 4.0),
            ("pow(2, 3)", 8.0),
            ("int(-3.7)", -3.0),
            ('int(" 42 ")', 42.0),
            ('float("2.5")', 2.5),
            ("str([1, 2])", "[1, 2]"),
            ('upper("abc")', "ABC"),
            ('split("a b  c")', ["a", "b", "c"]),
            ('split("a,b", ",")', ["a", "b"]),
            ('join(["a", 1], "-")', "a-1"),
            ('strip("  x ")', "x"),
            ('replace("aXa", "a", "b")', "bXb"),
            ('find("hello", "l")', 2.0),
            ('startswith("hello", "he")', True),
            ('index([5, 6], 7)', -1.0),
            ("count([1, 2, 1], 1)", 2.0),
            ("绝对值(-1)", 1.0),
            ("随机整数(4, 4)", 4.0),
        ],
    )
    def test_builtin(self, run_vm, expression, expected):
        vm, _ = run_vm(f"r = {expression}")
        assert variables(vm)["r"] == expected

    def test_in_place_list_builtins(self, run_vm):
        source = (
            "a = [3, 1, 2]\n"
            "sort(a)\n"
            "insert(a, 0, 0)\n"
            "last = pop(a)\n"
            "first = pop(a, 0)\n"
            "reverse(a)\n"
        )
        vm, _ = run_vm(source)
        assert variables(vm) == {"a": [2.0, 1.0], "last": 3.0, "first": 0.0}

    @pytest.mark.parametrize(
        "statement, fragment",
        [
            ("pop([])", "empty"),
            ("insert([], 2, 1)", "out of range"),
            ('sort([1, "a"])', "only numbers or only strings"),
            ("sqrt(-1)", "negative"),
            ('int("abc")', "can not convert"),
            ("nothing(1)", "Undefined function 'nothing'"),
            ("abs(1, 2)", "at most 1"),
            ("randint(5, 1)", "min <= max"),
            ("round(10 ** 300, 10)", "can not round"),
            ("round(5, -400)", "can not round"),
        ],
    )
    def test_library_errors(self, run_vm, statement, fragment):
        with pytest.raises(MiniPyRuntimeError) as info:
            run_vm(statement)
        assert fragment in info.value.message

    def test_user_function_can_not_be_called_when_not_a_function(self, run_vm):
        with pytest.raises(MiniPyRuntimeError, match="not a function"):
            run_vm("f = 3\nf()")

    def test_random_is_reproducible_with_a_seed(self, run_vm):
        first, _ = run_vm("r = [random(), randint(1, 100)]", seed=42)
        second, _ = run_vm("r = [random(), randint(1, 100)]", seed=42)
        assert variables(first)["r"] == variables(second)["r"]
        assert 0.0 <= variables(first)["r"][0] < 1.0


class TestErrors:
    def test_error_scenario(self, load_vm):
        vm, output = load_vm("y = z + 1")
        with pytest.raises(MiniPyRuntimeError) as info:
            vm.step()
        assert "z" in info.value.message
        assert info.value.line == 1
        assert output == []
        assert vm.get_status() == "errored"

    def test_steps_after_an_error_are_no_ops(self, load_vm):
        vm, _ = load_vm("print(1)\ny = z\nprint(2)")
        vm.step()
        with pytest.raises(MiniPyRuntimeError):
            vm.step()
        history = vm.get_history_length()
        assert vm.step().done is True
        assert vm.step().done is True
        assert vm.get_history_length() == history
        assert vm.get_error() is not None

    def test_numeric_overflow_leaves_vm_errored(self, load_vm):
        vm, _ = load_vm("r = round(5, -400)\nprint(r)")
        with pytest.raises(MiniPyRuntimeError, match="can not round"):
            vm.step()
        assert vm.get_status() == "errored"
        assert vm.step().done is True

    def test_empty_string_repeat_never_overflows(self, run_vm):
        vm, _ = run_vm('r = "" * 10 ** 300')
        assert variables(vm)["r"] == ""

    @pytest.mark.parametrize(
        "source, fragment",
        [
            ("break", "'break' outside loop"),
            ("continue", "'continue' outside loop"),
            ("return 1", "'return' outside function"),
            ("def f():\n    break\nf()", "'break' outside loop"),
            ("repeat -1 times:\n    pass", "non-negative"),
            ("for i in range(0, 5, 0):\n    pass", "zero"),
            ("for i in range(1.5):\n    pass", "integers"),
            ("for v in 5:\n    pass", "Can only loop"),
        ],
    )
    def test_control_flow_errors(self, run_vm, source, fragment):
        with pytest.raises(MiniPyRuntimeError) as info:
            run_vm(source)
        assert fragment in info.value.message

    def test_loop_leaving_function_with_break_is_rejected(self, run_vm):
        source = "def f():\n    break\nwhile True:\n    f()"
        with pytest.raises(MiniPyRuntimeError, match="'break' outside loop"):
            run_vm(source)

    def test_step_limit(self, run_vm):
        with pytest.raises(MiniPyRuntimeError, match="Too many steps"):
            run_vm("while True:\n    pass", max_steps=50)

    def test_error_to_dict(self, load_vm):
        vm, _ = load_vm("x = 1\ny = [][0]")
        with pytest.raises(MiniPyRuntimeError) as info:
            vm.run()
        data = info.value.to_dict()
        assert data["line"] == 2
        assert data["type"] == "RuntimeError"
        assert info.value.step_index == 2


class TestGlobals:
    def test_set_and_get_global(self, load_vm):
        vm, output = load_vm("print(name, len(items))")
        vm.set_global("name", "bot")
        vm.set_global("items", [1, 2, 3])
        vm.run()
        assert output == ["bot 3"]
        assert vm.get_global("name") == string("bot")
        assert vm.get_global("missing") is None

    def test_reset_keeps_breakpoints(self, run_vm):
        vm, output = run_vm("print(1)")
        vm.add_breakpoint(1)
        vm.add_watch("x")
        vm.reset()
        assert vm.get_status() == "ready"
        assert vm.get_breakpoints() == [1]
        assert vm.get_watch_list() == ["x"]
        assert vm.get_output() == []

    def test_compiled_program_is_reusable(self):
        program = compile_source("x = 1\nx += 1")
        first = VM(options=VMOptions())
        second = VM(options=VMOptions())
        first.load(program)
        second.load(program)
        first.run()
        assert second.get_variables() == {}
        second.run()
        assert second.get_variables() == {"x": number(2)}


def test_value_helpers_compare_by_structure():
    assert array([number(1)]) == array([number(1)])
    assert obj({"a": none_value()}) != obj({"a": boolean(False)})

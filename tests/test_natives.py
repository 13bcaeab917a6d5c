import os
import textwrap

import pytest

from interpreter import VM, MiniPyRuntimeError, VMOptions, compile_source
from natives import (
    ExtensionAPI,
    ExtensionError,
    NativeRegistry,
    RuntimeServices,
    load_runtime_services,
)
from values import TYPE_ARR, number, string

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
MAZE_EXTENSION = os.path.join(ROOT, "ext", "maze.py")


def make_vm(source, natives=None, services=None, **options):
    output = []
    vm = VM(natives=natives, services=services, output_sink=output.append, options=VMOptions(**options))
    vm.load(compile_source(source))
    return vm, output


class TestRegistry:
    def test_duplicate_names_are_rejected(self):
        registry = NativeRegistry()
        registry.register_command("forward", lambda: None)
        with pytest.raises(ExtensionError):
            registry.register_sensor("forward", lambda: True)

    def test_names_and_unregister(self):
        registry = NativeRegistry()
        registry.register_command("b", lambda: None)
        registry.register_sensor("a", lambda: 1)
        assert registry.names() == ["a", "b"]
        registry.unregister("b")
        assert not registry.has("b")
        assert registry.get("a").kind == "sensor"


class TestNativeCalls:
    def test_commands_are_reported_as_actions(self):
        moves = []
        registry = NativeRegistry()
        registry.register_command("move", lambda steps: moves.append(steps), min_args=1, max_args=1)
        vm, _ = make_vm("move(2)\nx = 1", natives=registry)
        result = vm.step()
        assert result.action == "move"
        assert result.action_args == (number(2),)
        assert moves == [2.0]
        assert vm.step().action is None

    def test_sensor_results_become_values(self):
        registry = NativeRegistry()
        registry.register_sensor("scan", lambda: {"walls": (1, 0), "clear": True})
        vm, _ = make_vm("s = scan()\nw = s.walls", natives=registry)
        vm.run()
        assert vm.get_variables()["w"].type == TYPE_ARR
        assert vm.get_variables()["s"].value["clear"].value is True

    def test_natives_shadow_user_functions(self):
        registry = NativeRegistry()
        registry.register_sensor("pick", lambda: "native")
        vm, output = make_vm('def pick():\n    return "user"\nprint(pick())', natives=registry)
        vm.run()
        assert output == ["native"]

    def test_natives_are_not_called_again_after_a_user_call(self):
        calls = []
        registry = NativeRegistry()
        registry.register_sensor("tick", lambda: calls.append(1) or len(calls))
        source = "def one():\n    return 1\nx = tick() + one()"
        vm, _ = make_vm(source, natives=registry)
        vm.run()
        assert calls == [1]
        assert vm.get_variables()["x"] == number(2)

    def test_arity_is_checked(self):
        registry = NativeRegistry()
        registry.register_command("turn", lambda: None, max_args=0)
        vm, _ = make_vm("turn(1)", natives=registry)
        with pytest.raises(MiniPyRuntimeError, match="at most 0"):
            vm.step()

    def test_host_failures_are_wrapped(self):
        def explode():
            raise ValueError("boom")

        registry = NativeRegistry()
        registry.register_command("explode", explode)
        vm, _ = make_vm("x = 1\nexplode()", natives=registry)
        vm.step()
        with pytest.raises(MiniPyRuntimeError) as info:
            vm.step()
        assert "explode" in info.value.message and "boom" in info.value.message
        assert info.value.line == 2

    def test_pass_values_hands_over_language_values(self):
        seen = []
        registry = NativeRegistry()
        registry.register_command("log", lambda value: seen.append(value), min_args=1, max_args=1, pass_values=True)
        vm, _ = make_vm('log("hi")', natives=registry)
        vm.run()
        assert seen == [string("hi")]


class TestHooks:
    def test_event_hooks(self):
        services = RuntimeServices()
        api = ExtensionAPI(services=services, ext_name="probe")
        events = []

        api.on_event("program_load", lambda vm, program: events.append("load"))
        api.on_event("on_print", lambda vm, text: events.append(f"print:{text}"))
        api.on_event("function_enter", lambda vm, name, args: events.append(f"enter:{name}"))
        api.on_event("function_exit", lambda vm, name, value: events.append(f"exit:{name}"))
        api.on_event("program_end", lambda vm: events.append("end"))

        vm, _ = make_vm("def f():\n    return 1\nprint(f())", services=services)
        vm.run()
        assert events == ["load", "enter:f", "exit:f", "print:1", "end"]

    def test_error_hook(self):
        services = RuntimeServices()
        errors = []
        ExtensionAPI(services=services, ext_name="probe").on_event("on_error", lambda vm, error: errors.append(error.line))
        vm, _ = make_vm("x = 1\ny = nope", services=services)
        with pytest.raises(MiniPyRuntimeError):
            vm.run()
        assert errors == [2]

    def test_every_n_steps(self):
        services = RuntimeServices()
        api = ExtensionAPI(services=services, ext_name="probe")
        seen = []

        @api.every_n_steps(2)
        def every_other(vm, ctx):
            seen.append(ctx.step_index)

        vm, _ = make_vm("a = 1\nb = 2\nc = 3\nd = 4\ne = 5", services=services)
        vm.run()
        assert seen == [2, 4]

    def test_failing_hook_becomes_runtime_error(self):
        services = RuntimeServices()

        def broken(vm, text):
            raise RuntimeError("display went away")

        ExtensionAPI(services=services, ext_name="probe").on_event("on_print", broken)
        vm, _ = make_vm("print(1)", services=services)
        with pytest.raises(MiniPyRuntimeError, match="display went away"):
            vm.step()


class TestExtensionLoading:
    def test_load_from_file(self, tmp_path):
        path = tmp_path / "beeper.py"
        path.write_text(
            textwrap.dedent(
                """
                MINIPYTHON_EXTENSION_NAME = "beeper"

                def minipython_register(ext):
                    ext.metadata(name="beeper", version="1.2.0")

                    @ext.sensor("beeps", 0, 0)
                    def beeps():
                        return 3

                    @ext.command("beep", 0, 1)
                    def beep(times=1):
                        pass
                """
            ),
            encoding="utf-8",
        )
        services = load_runtime_services([str(path)])
        assert [meta.name for meta in services.metadata] == ["beeper"]
        vm, output = make_vm("beep()\nprint(beeps())", services=services)
        vm.run()
        assert output == ["3"]

    def test_missing_register_function(self, tmp_path):
        path = tmp_path / "empty.py"
        path.write_text("X = 1\n", encoding="utf-8")
        with pytest.raises(ExtensionError, match="minipython_register"):
            load_runtime_services([str(path)])

    def test_api_version_mismatch(self, tmp_path):
        path = tmp_path / "future.py"
        path.write_text("MINIPYTHON_EXTENSION_API_VERSION = 99\ndef minipython_register(ext):\n    pass\n", encoding="utf-8")
        with pytest.raises(ExtensionError, match="requires API 99"):
            load_runtime_services([str(path)])

    def test_metadata_requiring_newer_api(self, tmp_path):
        path = tmp_path / "newer.py"
        path.write_text('def minipython_register(ext):\n    ext.metadata(name="newer", requires_api=2)\n', encoding="utf-8")
        with pytest.raises(ExtensionError, match="requires API 2"):
            load_runtime_services([str(path)])

    def test_missing_file(self, tmp_path):
        with pytest.raises(ExtensionError, match="not found"):
            load_runtime_services([str(tmp_path / "nope.py")])


class TestMazeExtension:
    SOLVER = (
        "def step_towards_goal():\n"
        "    turnRight()\n"
        "    if frontClear():\n"
        "        return 0\n"
        "    turnLeft()\n"
        "    if frontClear():\n"
        "        return 0\n"
        "    turnLeft()\n"
        "    return 0\n"
        "moves = 0\n"
        "while not atGoal() and moves < 100:\n"
        "    step_towards_goal()\n"
        "    if frontClear():\n"
        "        forward()\n"
        "        moves += 1\n"
        "    else:\n"
        "        turnLeft()\n"
        "print(atGoal(), position())\n"
    )

    def test_robot_reaches_the_goal(self):
        services = load_runtime_services([MAZE_EXTENSION])
        vm, output = make_vm(self.SOLVER, services=services)
        vm.run()
        assert output == ["true [5, 5]"]

    def test_chinese_aliases_and_wall_bump(self):
        services = load_runtime_services([MAZE_EXTENSION])
        vm, output = make_vm("print(朝向())\n前进()\n前进()\n前进()", services=services)
        vm.step()
        vm.step()
        vm.step()
        assert output == ["east"]
        with pytest.raises(MiniPyRuntimeError, match="wall"):
            vm.step()

    def test_program_load_resets_the_robot(self):
        services = load_runtime_services([MAZE_EXTENSION])
        vm, _ = make_vm("forward()\np = position()", services=services)
        vm.run()
        assert vm.get_variables()["p"].to_python() == [1.0, 2.0]
        vm.reset()
        vm.run()
        assert vm.get_variables()["p"].to_python() == [1.0, 2.0]

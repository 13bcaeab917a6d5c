from __future__ import annotations

import hashlib
import importlib.util
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from lexer import MiniPyError
from values import Value, from_python, none_value


EXTENSION_API_VERSION = 1

KIND_COMMAND = "command"
KIND_SENSOR = "sensor"

logger = logging.getLogger("minipython.natives")
logger.addHandler(logging.NullHandler())


class ExtensionError(MiniPyError):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class NativeFunction:
    """A host callable reachable from program code.

    Commands act on the game world and their result is ignored; sensors
    return a value. With ``pass_values`` the handler receives ``Value``
    objects, otherwise plain Python data from ``Value.to_python()``.
    """

    name: str
    kind: str
    impl: Callable[..., Any]
    min_args: int = 0
    max_args: Optional[int] = None
    pass_values: bool = False
    doc: str = ""

    def validate(self, supplied: int) -> Optional[str]:
        if supplied < self.min_args:
            return f"{self.name} expects at least {self.min_args} arguments but got {supplied}"
        if self.max_args is not None and supplied > self.max_args:
            return f"{self.name} expects at most {self.max_args} arguments but got {supplied}"
        return None

    def call(self, args: List[Value]) -> Value:
        if self.pass_values:
            result = self.impl(*args)
        else:
            result = self.impl(*[arg.to_python() for arg in args])
        if self.kind == KIND_COMMAND:
            return none_value()
        return from_python(result)


@dataclass
class NativeRegistry:
    _table: Dict[str, NativeFunction] = field(default_factory=dict)

    def register(self, native: NativeFunction) -> None:
        if not native.name:
            raise ExtensionError("Native function name must be non-empty")
        if native.kind not in (KIND_COMMAND, KIND_SENSOR):
            raise ExtensionError(f"Unknown native kind '{native.kind}'")
        if native.name in self._table:
            raise ExtensionError(f"Native function '{native.name}' is already registered")
        self._table[native.name] = native
        logger.debug("Registered %s %s", native.kind, native.name)

    def register_command(
        self,
        name: str,
        handler: Callable[..., Any],
        *,
        min_args: int = 0,
        max_args: Optional[int] = None,
        pass_values: bool = False,
        doc: str = "",
    ) -> None:
        self.register(NativeFunction(name, KIND_COMMAND, handler, int(min_args), max_args, pass_values, doc))

    def register_sensor(
        self,
        name: str,
        handler: Callable[..., Any],
        *,
        min_args: int = 0,
        max_args: Optional[int] = None,
        pass_values: bool = False,
        doc: str = "",
    ) -> None:
        self.register(NativeFunction(name, KIND_SENSOR, handler, int(min_args), max_args, pass_values, doc))

    def unregister(self, name: str) -> None:
        self._table.pop(name, None)

    def get(self, name: str) -> Optional[NativeFunction]:
        return self._table.get(name)

    def has(self, name: str) -> bool:
        return name in self._table

    def names(self) -> List[str]:
        return sorted(self._table)


@dataclass(frozen=True)
class StepContext:
    step_index: int
    rule: str
    location: Any  # SourceLocation | None
    extra: Optional[Dict[str, Any]]


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, ext_name)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # list[(every_n, handler, ext_name, name)]
    _step_rules: List[Tuple[int, Callable[[Any, StepContext], None], str, str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int = 0, ext_name: str = "<host>") -> None:
        self._events.setdefault(event, []).append((priority, handler, ext_name))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)

    def add_step_rule(self, *, name: str, every_n: int, handler: Callable[[Any, StepContext], None], ext_name: str) -> None:
        if every_n <= 0:
            raise ExtensionError("every_n_steps must be >= 1")
        self._step_rules.append((every_n, handler, ext_name, name))

    def after_step(self, vm: Any, ctx: StepContext) -> None:
        for every_n, handler, _ext, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(vm, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    natives: NativeRegistry = field(default_factory=NativeRegistry)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    @property
    def name(self) -> str:
        return self._ext_name

    # ---- metadata ----
    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        if requires_api > EXTENSION_API_VERSION:
            raise ExtensionError(f"Extension {name} requires API {requires_api}, host supports {EXTENSION_API_VERSION}")
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    # ---- natives ----
    def register_command(self, name: str, handler: Callable[..., Any], min_args: int = 0, max_args: Optional[int] = None, **kwargs: Any) -> None:
        self._services.natives.register_command(name, handler, min_args=min_args, max_args=max_args, **kwargs)

    def register_sensor(self, name: str, handler: Callable[..., Any], min_args: int = 0, max_args: Optional[int] = None, **kwargs: Any) -> None:
        self._services.natives.register_sensor(name, handler, min_args=min_args, max_args=max_args, **kwargs)

    def command(self, name: str, min_args: int = 0, max_args: Optional[int] = None, *, doc: str = ""):
        def deco(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register_command(name, fn, min_args, max_args, doc=doc)
            return fn

        return deco

    def sensor(self, name: str, min_args: int = 0, max_args: Optional[int] = None, *, doc: str = ""):
        def deco(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register_sensor(name, fn, min_args, max_args, doc=doc)
            return fn

        return deco

    # ---- hooks ----
    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        if handler is None:
            def deco(fn: Callable[..., None]) -> Callable[..., None]:
                self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)
        return handler

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        if handler is None:
            def deco(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
                self._services.hook_registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.add_step_rule(name=name or handler.__name__, every_n=every_n, handler=handler, ext_name=self._ext_name)
        return handler


def _unique_module_name(path: str) -> str:
    base = os.path.basename(path)
    digest = hashlib.sha256(os.path.abspath(path).encode("utf-8")).hexdigest()[:12]
    safe = "".join(ch if ch.isalnum() else "_" for ch in base)
    return f"minipython_ext_{safe}_{digest}"


def load_extension_module(path: str) -> Any:
    if not os.path.exists(path):
        raise ExtensionError(f"Extension not found: {path}")
    mod_name = _unique_module_name(path)
    spec = importlib.util.spec_from_file_location(mod_name, path)
    if spec is None or spec.loader is None:
        raise ExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)

    # Let extensions import siblings by temporarily prepending their directory.
    ext_dir = os.path.dirname(os.path.abspath(path))
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)  # type: ignore[union-attr]
    finally:
        if sys.path and sys.path[0] == ext_dir:
            sys.path.pop(0)
    return module


def register_extension(services: RuntimeServices, module: Any, default_name: str) -> None:
    api_version = getattr(module, "MINIPYTHON_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise ExtensionError(
            f"Extension {default_name} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
        )
    register = getattr(module, "minipython_register", None)
    if register is None or not callable(register):
        raise ExtensionError(f"Extension {default_name} must define callable minipython_register(ext)")
    ext_name = getattr(module, "MINIPYTHON_EXTENSION_NAME", default_name)
    register(ExtensionAPI(services=services, ext_name=str(ext_name)))
    logger.debug("Loaded extension %s", ext_name)


def load_runtime_services(paths: Sequence[str], services: Optional[RuntimeServices] = None) -> RuntimeServices:
    services = services or RuntimeServices()
    for path in paths:
        resolved = os.path.abspath(path)
        module = load_extension_module(resolved)
        register_extension(services, module, os.path.splitext(os.path.basename(resolved))[0])
    return services

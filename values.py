"""Runtime values of the language.

Every value is a ``Value`` whose ``type`` is one of the ``TYPE_*`` tags below.
Payloads by tag:

- NUM: ``float``
- STR: ``str``
- BOOL: ``bool``
- ARR: ``list`` of ``Value`` (mutable, shared by reference between bindings)
- OBJ: ``dict`` of ``str`` -> ``Value`` (insertion ordered, shared by reference)
- FUNC: ``Function``
- NONE: ``None``

The coercion, equality and display rules live here so that the VM, the
library builtins and native functions all agree on them.
"""

from __future__ import annotations
import math
import numpy as np
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from parser import Block


TYPE_NUM = "NUM"
TYPE_STR = "STR"
TYPE_BOOL = "BOOL"
TYPE_ARR = "ARR"
TYPE_OBJ = "OBJ"
TYPE_FUNC = "FUNC"
TYPE_NONE = "NONE"

TYPE_NAMES: Dict[str, str] = {
    TYPE_NUM: "number",
    TYPE_STR: "string",
    TYPE_BOOL: "boolean",
    TYPE_ARR: "array",
    TYPE_OBJ: "object",
    TYPE_FUNC: "function",
    TYPE_NONE: "None",
}


@dataclass(eq=False)
class Function:
    name: str
    params: List[str]
    body: Block
    closure: Any  # Environment the function was defined in


@dataclass
class Value:
    type: str
    value: Any

    def to_python(self) -> Any:
        """Convert to plain Python data (floats stay floats)."""
        if self.type == TYPE_ARR:
            return [item.to_python() for item in self.value]
        if self.type == TYPE_OBJ:
            return {key: item.to_python() for key, item in self.value.items()}
        return self.value


def none_value() -> Value:
    return Value(TYPE_NONE, None)


def number(x: float) -> Value:
    return Value(TYPE_NUM, float(x))


def string(text: str) -> Value:
    return Value(TYPE_STR, text)


def boolean(flag: bool) -> Value:
    return Value(TYPE_BOOL, bool(flag))


def array(items: List[Value]) -> Value:
    return Value(TYPE_ARR, items)


def obj(entries: Dict[str, Value]) -> Value:
    return Value(TYPE_OBJ, entries)


def from_python(data: Any) -> Value:
    """Wrap host data (including numpy scalars and arrays) as a ``Value``."""
    if isinstance(data, Value):
        return data
    if data is None:
        return none_value()
    if isinstance(data, (bool, np.bool_)):
        return boolean(bool(data))
    if isinstance(data, (int, float, np.integer, np.floating)):
        return number(float(data))
    if isinstance(data, str):
        return string(data)
    if isinstance(data, np.ndarray):
        return from_python(data.tolist())
    if isinstance(data, (list, tuple)):
        return array([from_python(item) for item in data])
    if isinstance(data, dict):
        return obj({str(key): from_python(item) for key, item in data.items()})
    raise TypeError(f"Can not convert {type(data).__name__} to a language value")


def type_name(value: Value) -> str:
    return TYPE_NAMES.get(value.type, value.type)


def is_truthy(value: Value) -> bool:
    vtype = value.type
    if vtype == TYPE_BOOL:
        return bool(value.value)
    if vtype == TYPE_NUM:
        return value.value != 0.0
    if vtype == TYPE_STR or vtype == TYPE_ARR:
        return len(value.value) > 0
    if vtype == TYPE_NONE:
        return False
    # Objects and functions are always truthy, even when empty.
    return True


def values_equal(left: Value, right: Value) -> bool:
    if left.type != right.type:
        return False
    if left.type == TYPE_ARR:
        items_l, items_r = left.value, right.value
        if len(items_l) != len(items_r):
            return False
        return all(values_equal(a, b) for a, b in zip(items_l, items_r))
    if left.type == TYPE_OBJ:
        if left.value.keys() != right.value.keys():
            return False
        return all(values_equal(item, right.value[key]) for key, item in left.value.items())
    if left.type == TYPE_FUNC:
        return left.value is right.value
    return left.value == right.value


def as_index(value: Value) -> Optional[int]:
    """Return the integer held by a NUM value, or None when it is not integral."""
    if value.type != TYPE_NUM:
        return None
    x = value.value
    if not math.isfinite(x) or not float(x).is_integer():
        return None
    return int(x)


def format_number(x: float) -> str:
    if math.isfinite(x) and float(x).is_integer():
        return str(int(x))
    return repr(float(x))


def display(value: Value) -> str:
    """Text written by ``print`` and produced by ``str()`` and string concatenation."""
    if value.type == TYPE_STR:
        return value.value
    return render(value)


def render(value: Value, seen: Optional[set] = None) -> str:
    """Source-like text: strings quoted, used inside containers and debug views."""
    vtype = value.type
    if vtype == TYPE_NUM:
        return format_number(value.value)
    if vtype == TYPE_STR:
        escaped = value.value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    if vtype == TYPE_BOOL:
        return "true" if value.value else "false"
    if vtype == TYPE_NONE:
        return "null"
    if vtype == TYPE_ARR or vtype == TYPE_OBJ:
        seen = set() if seen is None else seen
        if id(value.value) in seen:
            return "[...]" if vtype == TYPE_ARR else "{...}"
        seen.add(id(value.value))
        try:
            if vtype == TYPE_ARR:
                return "[" + ", ".join(render(item, seen) for item in value.value) + "]"
            parts = [f'"{key}": {render(item, seen)}' for key, item in value.value.items()]
            return "{" + ", ".join(parts) + "}"
        finally:
            seen.discard(id(value.value))
    if vtype == TYPE_FUNC:
        return f"<function {value.value.name}>"
    return f"<{vtype}>"

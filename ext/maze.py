"""MiniPython extension: a small grid maze for the robot commands.

The maze is a numpy array where 0 is floor, 1 is wall and 2 is the goal.
Load it with ``--ext ext/maze.py``; programs can then call the commands
``forward()``, ``turnLeft()`` and ``turnRight()`` and the sensors
``frontClear()``, ``atGoal()``, ``position()`` and ``heading()``.
Chinese aliases are registered for each of them.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np

from natives import ExtensionAPI, ExtensionError

MINIPYTHON_EXTENSION_NAME = "maze"
MINIPYTHON_EXTENSION_API_VERSION = 1

FLOOR = 0
WALL = 1
GOAL = 2

# (row delta, column delta) for north, east, south, west
DIRECTIONS: Tuple[Tuple[int, int], ...] = ((-1, 0), (0, 1), (1, 0), (0, -1))
DIRECTION_NAMES = ("north", "east", "south", "west")

DEFAULT_LAYOUT = (
    "#######",
    "#S..#.#",
    "#.#.#.#",
    "#.#...#",
    "#.###.#",
    "#....G#",
    "#######",
)


def parse_layout(rows: List[str]) -> Tuple[np.ndarray, Tuple[int, int]]:
    """Turn ``#``/``.``/``S``/``G`` text rows into a grid and a start cell."""
    if not rows:
        raise ExtensionError("Maze layout is empty")
    width = len(rows[0])
    if any(len(row) != width for row in rows):
        raise ExtensionError("Maze rows must all have the same width")
    grid = np.zeros((len(rows), width), dtype=np.int8)
    start: Optional[Tuple[int, int]] = None
    for r, row in enumerate(rows):
        for c, ch in enumerate(row):
            if ch == "#":
                grid[r, c] = WALL
            elif ch == "G":
                grid[r, c] = GOAL
            elif ch == "S":
                start = (r, c)
            elif ch != ".":
                raise ExtensionError(f"Unknown maze cell {ch!r} at row {r}, column {c}")
    if start is None:
        raise ExtensionError("Maze layout has no start cell 'S'")
    return grid, start


class Maze:
    def __init__(self, rows: Optional[List[str]] = None, heading: int = 1) -> None:
        self.grid, self.start = parse_layout(list(rows or DEFAULT_LAYOUT))
        self.start_heading = heading
        self.row, self.col = self.start
        self.heading = heading
        self.moves = 0

    def reset(self) -> None:
        self.row, self.col = self.start
        self.heading = self.start_heading
        self.moves = 0

    def _ahead(self) -> Tuple[int, int]:
        dr, dc = DIRECTIONS[self.heading]
        return self.row + dr, self.col + dc

    def front_clear(self) -> bool:
        r, c = self._ahead()
        height, width = self.grid.shape
        if not (0 <= r < height and 0 <= c < width):
            return False
        return bool(self.grid[r, c] != WALL)

    def forward(self) -> None:
        if not self.front_clear():
            raise ExtensionError(f"The robot bumped into a wall facing {DIRECTION_NAMES[self.heading]}")
        self.row, self.col = self._ahead()
        self.moves += 1

    def turn_left(self) -> None:
        self.heading = (self.heading - 1) % 4

    def turn_right(self) -> None:
        self.heading = (self.heading + 1) % 4

    def at_goal(self) -> bool:
        return bool(self.grid[self.row, self.col] == GOAL)

    def position(self) -> List[int]:
        return [self.row, self.col]

    def heading_name(self) -> str:
        return DIRECTION_NAMES[self.heading]


def minipython_register(ext: ExtensionAPI, maze: Optional[Maze] = None) -> Maze:
    maze = maze or Maze()
    ext.metadata(name="maze", version="0.1.0")
    for names, handler in ((("forward", "前进"), maze.forward), (("turnLeft", "左转"), maze.turn_left), (("turnRight", "右转"), maze.turn_right)):
        for name in names:
            ext.register_command(name, handler, 0, 0, doc=f"{names[0]}()")
    for names, handler in (
        (("frontClear", "前方畅通"), maze.front_clear),
        (("atGoal", "到达终点"), maze.at_goal),
        (("position", "位置"), maze.position),
        (("heading", "朝向"), maze.heading_name),
    ):
        for name in names:
            ext.register_sensor(name, handler, 0, 0, doc=f"{names[0]}()")
    ext.on_event("program_load", lambda vm, program: maze.reset())
    return maze

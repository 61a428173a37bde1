#!/usr/bin/env python3
"""voxel_lsystem.py

An L-system interpreter that draws into a voxel volume and writes MagicaVoxel
.vox files.

Key features:
- JSON-based input configuration.
- Generation-by-generation derivation, plus streaming expansion for previews.
- 3D turtle (yaw, pitch, roll) with branching via push/pop.
- Sub-voxel line rasterization into a dense RGBA volume.
- Solid or rainbow pen colors.
- Random config generator for experimentation.

Run:
  python voxel_lsystem.py render config.json output.vox
  python voxel_lsystem.py inspect output.vox
  python voxel_lsystem.py random out.json --seed 123
  python voxel_lsystem.py --help
"""

from __future__ import annotations

import argparse
import itertools
import json
import logging
import math
import numbers
import os
import random
import struct
import sys
from collections.abc import (
    Callable,
    Generator,
    Iterable,
    Iterator,
    Mapping,
    Sequence,
)
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Literal, cast

import numpy as np

logger = logging.getLogger(__name__)

Rgba = tuple[int, int, int, int]
Vec3 = tuple[float, float, float]
Cell = tuple[int, int, int]
Axis = Literal["up", "left", "forward"]

TRANSPARENT: Rgba = (0, 0, 0, 0)
BLACK: Rgba = (0, 0, 0, 255)


# -------------------------
# Errors / Validation
# -------------------------


class ConfigError(ValueError):
    pass


class RenderError(Exception):
    pass


class InvalidDimension(RenderError, ValueError):
    pass


class OutOfBounds(RenderError, IndexError):
    pass


class UnbalancedBranch(RenderError):
    pass


class PaletteOverflow(RenderError):
    pass


class VoxFormatError(ValueError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigError(msg)


def _as_float(x: Any, path: str) -> float:
    _require(
        isinstance(x, (int, float)) and not isinstance(x, bool),
        f"{path} must be a number",
    )
    _require(math.isfinite(x), f"{path} must be finite")
    return float(x)


def _as_int(x: Any, path: str) -> int:
    _require(
        isinstance(x, int) and not isinstance(x, bool), f"{path} must be an integer"
    )
    return int(x)


def _as_str(x: Any, path: str) -> str:
    _require(isinstance(x, str), f"{path} must be a string")
    return cast(str, x)


def _as_bool(x: Any, path: str) -> bool:
    _require(isinstance(x, bool), f"{path} must be a boolean")
    return cast(bool, x)


def _as_dict(x: Any, path: str) -> dict[str, Any]:
    _require(isinstance(x, dict), f"{path} must be an object")
    return cast(dict[str, Any], x)


def _as_rgba(x: Any, path: str) -> Rgba:
    _require(
        isinstance(x, (list, tuple)) and len(x) == 4,
        f"{path} must be a list of 4 integers",
    )
    channels = tuple(_as_int(c, f"{path}[{i}]") for i, c in enumerate(x))
    _require(all(0 <= c <= 255 for c in channels), f"{path} channels must be 0..255")
    return cast(Rgba, channels)


def _check_rgba(color: Any) -> Rgba:
    # Render-time counterpart of _as_rgba; accepts numpy integer channels.
    if not isinstance(color, (list, tuple, np.ndarray)) or len(color) != 4:
        raise ValueError(f"color must have 4 channels, got {color!r}")
    channels = []
    for c in color:
        if isinstance(c, (bool, np.bool_)) or not isinstance(c, numbers.Integral):
            raise ValueError(f"color channels must be integers, got {color!r}")
        if not 0 <= c <= 255:
            raise ValueError(f"color channels must be 0..255, got {color!r}")
        channels.append(int(c))
    r, g, b, a = channels
    return (r, g, b, a)


# -------------------------
# Voxel buffer
# -------------------------


class VoxelBuffer:
    """Dense RGBA voxel volume.

    Cells are addressed as ``(x, y, z)`` with ``x < width``, ``y < height`` and
    ``z < depth``; z points up, as in the .vox format. Every cell starts out
    TRANSPARENT. Access outside the volume raises OutOfBounds, it is never
    clamped.
    """

    def __init__(self, width: int, height: int, depth: int) -> None:
        for name, value in (("width", width), ("height", height), ("depth", depth)):
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise InvalidDimension(
                    f"{name} must be a positive integer, got {value!r}"
                )
        self._size = (width, height, depth)
        self._data = np.zeros((width, height, depth, 4), dtype=np.uint8)

    def dimensions(self) -> tuple[int, int, int]:
        return self._size

    def contains(self, x: int, y: int, z: int) -> bool:
        w, h, d = self._size
        return 0 <= x < w and 0 <= y < h and 0 <= z < d

    def _check(self, x: int, y: int, z: int) -> None:
        if not self.contains(x, y, z):
            raise OutOfBounds(f"voxel {(x, y, z)} out of bounds {self._size}")

    def get(self, x: int, y: int, z: int) -> Rgba:
        self._check(x, y, z)
        r, g, b, a = self._data[x, y, z].tolist()
        return (r, g, b, a)

    def set(self, x: int, y: int, z: int, color: Rgba) -> None:
        self._check(x, y, z)
        self._data[x, y, z] = _check_rgba(color)

    def filled(self) -> Iterator[tuple[Cell, Rgba]]:
        """Yield ``(cell, color)`` for every cell with nonzero alpha.

        Order is z-major: x varies fastest, then y, then z.
        """
        zs, ys, xs = np.nonzero(self._data[..., 3].transpose(2, 1, 0))
        for x, y, z in zip(xs.tolist(), ys.tolist(), zs.tolist()):
            r, g, b, a = self._data[x, y, z].tolist()
            yield (x, y, z), (r, g, b, a)

    def count_filled(self) -> int:
        return int(np.count_nonzero(self._data[..., 3]))


# -------------------------
# Derivation
# -------------------------


def derive(axiom: str, rules: Mapping[str, str], generations: int) -> str:
    """Rewrite ``axiom`` through ``rules`` for ``generations`` steps.

    Each generation is one left-to-right pass over the previous one: every
    symbol is replaced by its rule (or kept as is), and the replacements are
    not rescanned until the next generation.
    """
    _require(generations >= 0, "generations must be >= 0")
    rules = dict(rules)
    current = axiom
    for n in range(generations):
        current = "".join([rules.get(ch, ch) for ch in current])
        logger.debug("generation %d: %d symbols", n + 1, len(current))
    return current


def stream_expand(
    axiom: str, rules: Mapping[str, str], generations: int
) -> Generator[str, None, None]:
    """Yield the symbols of ``derive(axiom, rules, generations)`` lazily.

    Walks the rewrite tree depth-first with an explicit stack of iterators, so
    memory grows with ``generations`` instead of with the output length.
    """
    _require(generations >= 0, "generations must be >= 0")

    stack: list[tuple[Iterator[str], int]] = [(iter(axiom), 0)]
    while stack:
        symbols, depth = stack[-1]
        ch = next(symbols, None)
        if ch is None:
            stack.pop()
            continue
        if depth < generations and ch in rules:
            stack.append((iter(rules[ch]), depth + 1))
        else:
            yield ch


_ARROWS = ("→", "->")


def parse_production(text: str) -> tuple[str, str]:
    """Split ``"A→AB"`` (or ``"A->AB"``) into ``("A", "AB")``."""
    for arrow in _ARROWS:
        if arrow in text:
            lhs, rhs = text.split(arrow, 1)
            lhs = lhs.strip()
            _require(
                len(lhs) == 1, f"production {text!r} must rewrite a single symbol"
            )
            return lhs, rhs.strip()
    raise ConfigError(f"production {text!r} has no arrow ('→' or '->')")


@dataclass(frozen=True)
class LSystem:
    name: str
    axiom: str
    rules: Mapping[str, str]

    def __post_init__(self) -> None:
        for k, v in self.rules.items():
            _require(
                isinstance(k, str) and len(k) == 1,
                "rules keys must be single-character strings",
            )
            _as_str(v, f"rules['{k}']")
        object.__setattr__(self, "rules", MappingProxyType(dict(self.rules)))

    @classmethod
    def from_productions(
        cls, name: str, axiom: str, productions: Iterable[str]
    ) -> LSystem:
        return cls(name, axiom, dict(parse_production(p) for p in productions))

    def derive(self, generations: int) -> str:
        return derive(self.axiom, self.rules, generations)


# -------------------------
# Rasterizer
# -------------------------

RASTER_STEP = 0.5


def round_half_away(values: np.ndarray) -> np.ndarray:
    """Round to the nearest integer; ties go away from zero (0.5 -> 1, -0.5 -> -1)."""
    values = np.asarray(values, dtype=float)
    return (np.sign(values) * np.floor(np.abs(values) + 0.5)).astype(np.int64)


def _clip_span(
    p0: np.ndarray, delta: np.ndarray, bounds: tuple[int, int, int]
) -> tuple[float, float] | None:
    # Slab intersection of p0 + t * delta, t in [0, 1], with the box of cell
    # centers padded by half a voxel.
    lo_t, hi_t = 0.0, 1.0
    for axis in range(3):
        lo, hi = -0.5, bounds[axis] - 0.5
        p, d = float(p0[axis]), float(delta[axis])
        if d == 0.0:
            if not lo <= p <= hi:
                return None
            continue
        t0, t1 = (lo - p) / d, (hi - p) / d
        if t0 > t1:
            t0, t1 = t1, t0
        lo_t, hi_t = max(lo_t, t0), min(hi_t, t1)
        if lo_t > hi_t:
            return None
    return lo_t, hi_t


def _segment_samples(
    start: Vec3,
    end: Vec3,
    max_step: float,
    bounds: tuple[int, int, int] | None = None,
) -> tuple[np.ndarray, int]:
    """Rounded sample cells of ``start -> end`` and the full sample count.

    With ``bounds``, only the samples whose parameter falls inside the padded
    volume (plus one on each side) are generated. They sit on the same
    parameters as the unclipped samples, so clipping never moves a cell.
    """
    if max_step <= 0:
        raise ValueError("max_step must be > 0")
    p0 = np.asarray(start, dtype=float)
    delta = np.asarray(end, dtype=float) - p0
    samples = math.ceil(float(np.linalg.norm(delta)) / max_step) + 1
    div = samples - 1
    if div == 0:
        return round_half_away(p0[np.newaxis, :]), samples

    first, last = 0, div
    if bounds is not None:
        span = _clip_span(p0, delta, bounds)
        if span is None:
            return np.empty((0, 3), dtype=np.int64), samples
        first = max(0, math.floor(span[0] * div))
        last = min(div, math.ceil(span[1] * div))

    # Same parameters as np.linspace(0, 1, samples), restricted to first..last.
    t = np.arange(first, last + 1, dtype=float) * (1.0 / div)
    if last == div:
        t[-1] = 1.0
    return round_half_away(p0 + delta * t[:, np.newaxis]), samples


def _collapse(rows: list[list[int]]) -> list[Cell]:
    cells: list[Cell] = []
    for x, y, z in rows:
        cell = (x, y, z)
        if not cells or cells[-1] != cell:
            cells.append(cell)
    return cells


def _inside(rows: np.ndarray, bounds: tuple[int, int, int]) -> np.ndarray:
    return np.all((rows >= 0) & (rows < np.asarray(bounds)), axis=1)


def segment_cells(
    start: Vec3,
    end: Vec3,
    max_step: float = RASTER_STEP,
    bounds: tuple[int, int, int] | None = None,
) -> list[Cell]:
    """Cells visited by the segment ``start -> end``, in order.

    The segment is sampled at ``ceil(length / max_step) + 1`` evenly spaced
    points and each point is rounded per axis. Consecutive duplicates are
    collapsed. Bounds are not checked here, but passing ``bounds`` drops the
    stretches of the segment that lie well outside that volume.
    """
    rows, _ = _segment_samples(start, end, max_step, bounds)
    return _collapse(rows.tolist())


def rasterize(
    buffer: VoxelBuffer,
    start: Vec3,
    end: Vec3,
    color: Rgba,
    *,
    max_step: float = RASTER_STEP,
) -> tuple[int, int]:
    """Write ``color`` into every cell of the segment that lies in ``buffer``.

    Returns ``(written, skipped)``: cells written and samples that fell
    outside the volume. A turtle is allowed to wander out of the model, and
    the work done depends on the part of the segment inside it.
    """
    color = _check_rgba(color)
    bounds = buffer.dimensions()
    rows, samples = _segment_samples(start, end, max_step, bounds)
    inside = _inside(rows, bounds)
    skipped = samples - int(np.count_nonzero(inside))

    written = 0
    for x, y, z in _collapse(rows[inside].tolist()):
        buffer.set(x, y, z, color)
        written += 1
    return written, skipped


# -------------------------
# Turtle
# -------------------------


@dataclass(frozen=True)
class TurtleState:
    position: Vec3
    forward: Vec3
    up: Vec3
    color: Rgba


def _vec3(v: Iterable[float]) -> Vec3:
    x, y, z = (float(c) for c in v)
    return (x, y, z)


def _rotate(v: np.ndarray, axis: np.ndarray, angle: float) -> np.ndarray:
    # Rodrigues' rotation about a unit axis.
    c, s = math.cos(angle), math.sin(angle)
    return v * c + np.cross(axis, v) * s + axis * float(np.dot(axis, v)) * (1.0 - c)


def _orthonormalize(
    forward: np.ndarray, up: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    norm = float(np.linalg.norm(forward))
    if norm < 1e-12:
        raise ValueError("forward vector must be nonzero")
    f = forward / norm
    u = up - float(np.dot(up, f)) * f
    norm = float(np.linalg.norm(u))
    if norm < 1e-12:
        raise ValueError("up vector must not be parallel to forward")
    return f, u / norm


class Turtle:
    """A 3D drawing turtle over a VoxelBuffer.

    Orientation is a forward vector plus an up vector; the left axis is
    ``up x forward``. Positive turns about ``up`` are counterclockwise seen
    from above, so from the default orientation (forward +x, up +z) a turn of
    pi/2 faces +y. Positive turns about ``left`` pitch the nose down.

    ``push``/``pop`` keep immutable TurtleState snapshots on a list.
    """

    def __init__(
        self,
        buffer: VoxelBuffer,
        *,
        position: Vec3 = (0.0, 0.0, 0.0),
        forward: Vec3 = (1.0, 0.0, 0.0),
        up: Vec3 = (0.0, 0.0, 1.0),
        color: Rgba = BLACK,
        max_step: float = RASTER_STEP,
    ) -> None:
        f, u = _orthonormalize(
            np.asarray(forward, dtype=float), np.asarray(up, dtype=float)
        )
        self.buffer = buffer
        self.max_step = max_step
        self.skipped = 0
        self._state = TurtleState(
            position=_vec3(position),
            forward=_vec3(f),
            up=_vec3(u),
            color=_check_rgba(color),
        )
        self._stack: list[TurtleState] = []

    @property
    def state(self) -> TurtleState:
        return self._state

    @property
    def depth(self) -> int:
        return len(self._stack)

    def _advance(self, distance: float) -> Vec3:
        px, py, pz = self._state.position
        fx, fy, fz = self._state.forward
        return (px + distance * fx, py + distance * fy, pz + distance * fz)

    def step(self, distance: float) -> None:
        """Move without drawing."""
        self._state = replace(self._state, position=self._advance(distance))

    def draw(self, distance: float) -> int:
        """Move and draw the path with the pen color. Returns cells written."""
        end = self._advance(distance)
        written, skipped = rasterize(
            self.buffer,
            self._state.position,
            end,
            self._state.color,
            max_step=self.max_step,
        )
        self.skipped += skipped
        self._state = replace(self._state, position=end)
        return written

    def draw_gradient(self, distance: float, colors: Sequence[Rgba]) -> int:
        """Move and draw, coloring the n-th cell of the path with ``colors[n]``.

        Cells are counted from the start of the segment, including cells
        outside the volume; cells past the end of ``colors`` take its last
        color. The pen color is left unchanged. Returns cells written.

        Unlike ``draw``, the whole segment is sampled, since every cell before
        the volume shifts the colors of the cells inside it.
        """
        if not colors:
            raise ValueError("colors must not be empty")
        palette = [_check_rgba(c) for c in colors]
        last = len(palette) - 1

        end = self._advance(distance)
        rows, samples = _segment_samples(self._state.position, end, self.max_step)
        ordinal = np.zeros(len(rows), dtype=np.int64)
        ordinal[1:] = np.cumsum(np.any(rows[1:] != rows[:-1], axis=1))
        first = np.ones(len(rows), dtype=bool)
        first[1:] = ordinal[1:] != ordinal[:-1]
        inside = _inside(rows, self.buffer.dimensions())
        self.skipped += samples - int(np.count_nonzero(inside))

        written = 0
        keep = inside & first
        for (x, y, z), n in zip(rows[keep].tolist(), ordinal[keep].tolist()):
            self.buffer.set(x, y, z, palette[min(n, last)])
            written += 1
        self._state = replace(self._state, position=end)
        return written

    def turn(self, axis: Axis, angle: float) -> None:
        """Rotate by ``angle`` radians about the turtle's own ``axis``."""
        f = np.array(self._state.forward)
        u = np.array(self._state.up)
        if axis == "up":
            f = _rotate(f, u, angle)
        elif axis == "left":
            k = np.cross(u, f)
            f = _rotate(f, k, angle)
            u = _rotate(u, k, angle)
        elif axis == "forward":
            u = _rotate(u, f, angle)
        else:
            raise ValueError(f"unknown turn axis {axis!r}")
        # Re-orthonormalize so error does not pile up over many turns.
        f, u = _orthonormalize(f, u)
        self._state = replace(self._state, forward=_vec3(f), up=_vec3(u))

    def left(self, angle: float) -> None:
        self.turn("up", angle)

    def right(self, angle: float) -> None:
        self.turn("up", -angle)

    def set_color(self, color: Rgba) -> None:
        self._state = replace(self._state, color=_check_rgba(color))

    def push(self) -> None:
        self._stack.append(self._state)

    def pop(self) -> None:
        if not self._stack:
            raise UnbalancedBranch("pop with an empty branch stack")
        self._state = self._stack.pop()


# -------------------------
# Colors
# -------------------------

ColorStrategy = Callable[[int], Rgba]

# Red, yellow, green, cyan, blue, magenta and back to red, in linear light.
_RAINBOW_STOPS = np.array(
    [
        [1.0, 0.0, 0.0, 1.0],
        [1.0, 1.0, 0.0, 1.0],
        [0.0, 1.0, 0.0, 1.0],
        [0.0, 1.0, 1.0, 1.0],
        [0.0, 0.0, 1.0, 1.0],
        [1.0, 0.0, 1.0, 1.0],
        [1.0, 0.0, 0.0, 1.0],
    ]
)


def linear_to_srgb(values: np.ndarray) -> np.ndarray:
    values = np.clip(np.asarray(values, dtype=float), 0.0, 1.0)
    return np.where(
        values <= 0.0031308,
        values * 12.92,
        1.055 * np.power(values, 1.0 / 2.4) - 0.055,
    )


def rainbow_gradient(steps: int) -> list[Rgba]:
    """``steps`` evenly spaced 8-bit sRGB colors along the rainbow stops."""
    _require(steps >= 1, "steps must be >= 1")
    positions = np.linspace(0.0, 1.0, steps)
    knots = np.linspace(0.0, 1.0, len(_RAINBOW_STOPS))
    linear = np.stack(
        [np.interp(positions, knots, _RAINBOW_STOPS[:, c]) for c in range(4)], axis=1
    )
    # Alpha is not gamma encoded.
    encoded = np.concatenate([linear_to_srgb(linear[:, :3]), linear[:, 3:]], axis=1)
    rows = np.rint(encoded * 255.0).astype(np.uint8).tolist()
    return [(r, g, b, a) for r, g, b, a in rows]


def solid(color: Rgba) -> ColorStrategy:
    rgba = _check_rgba(color)

    def assign(index: int) -> Rgba:
        return rgba

    return assign


def rainbow(steps: int = 250) -> ColorStrategy:
    """Color the n-th drawn segment with the n-th gradient color (clamped)."""
    colors = rainbow_gradient(steps)
    last = len(colors) - 1

    def assign(index: int) -> Rgba:
        return colors[min(max(index, 0), last)]

    return assign


# -------------------------
# Command model
# -------------------------

ActionKind = Literal[
    "draw", "move", "turn", "turn_abs", "draw_turn", "push", "pop", "noop"
]


@dataclass(frozen=True)
class Action:
    """One entry of the symbol table.

    ``scale`` multiplies the base step (draw, move, draw_turn) or the base
    angle (turn). ``degrees`` is the fixed rotation of a turn_abs.
    """

    kind: ActionKind
    axis: Axis = "up"
    direction: int = 1
    scale: float = 1.0
    degrees: float = 0.0


DEFAULT_COMMANDS: Mapping[str, Action] = MappingProxyType(
    {
        "F": Action("draw"),
        "f": Action("move"),
        "+": Action("turn", direction=1),
        "-": Action("turn", direction=-1),
        "&": Action("turn", axis="left", direction=1),
        "^": Action("turn", axis="left", direction=-1),
        "\\": Action("turn", axis="forward", direction=1),
        "/": Action("turn", axis="forward", direction=-1),
        "|": Action("turn_abs", degrees=180.0),
        "[": Action("push"),
        "]": Action("pop"),
    }
)

_DefaultAction = Literal["forward_draw", "forward_move", "noop"]

_FALLBACK_ACTIONS: dict[str, Action] = {
    "forward_draw": Action("draw"),
    "forward_move": Action("move"),
    "noop": Action("noop"),
}


@dataclass(frozen=True)
class RenderOptions:
    derivation_length: int = 2
    step_size: float = 2.0
    # radians
    angle: float = math.pi / 2
    size: tuple[int, int, int] = (64, 64, 64)
    offset: Vec3 = (0.0, 0.0, 0.0)
    # initial heading in the xy plane, radians from +x
    heading: float = math.pi / 2
    color: ColorStrategy = field(default_factory=lambda: solid(BLACK))
    commands: Mapping[str, Action] = field(default_factory=lambda: DEFAULT_COMMANDS)
    default_action: _DefaultAction = "noop"

    def __post_init__(self) -> None:
        _require(self.derivation_length >= 0, "derivation_length must be >= 0")
        _require(
            self.default_action in _FALLBACK_ACTIONS,
            (
                "default_action must be 'forward_draw', 'forward_move', or 'noop'; "
                f"got {self.default_action!r}"
            ),
        )


@dataclass(frozen=True)
class RenderConfig:
    l_system: LSystem
    options: RenderOptions


# -------------------------
# Interpreter
# -------------------------


def interpret(symbols: Iterable[str], turtle: Turtle, options: RenderOptions) -> int:
    """Drive ``turtle`` through ``symbols`` once, left to right.

    Symbols missing from ``options.commands`` fall back to
    ``options.default_action``. The pen color is taken from ``options.color``
    before every drawing action. Returns the number of drawing actions.
    """
    fallback = _FALLBACK_ACTIONS[options.default_action]
    commands = options.commands
    step = options.step_size
    angle = options.angle
    draws = 0

    for sym in symbols:
        action = commands.get(sym, fallback)
        kind = action.kind

        if kind == "noop":
            continue

        if kind == "draw":
            turtle.set_color(options.color(draws))
            draws += 1
            turtle.draw(step * action.scale)
            continue

        if kind == "move":
            turtle.step(step * action.scale)
            continue

        if kind == "turn":
            turtle.turn(action.axis, action.direction * action.scale * angle)
            continue

        if kind == "turn_abs":
            turtle.turn(action.axis, math.radians(action.degrees))
            continue

        if kind == "draw_turn":
            turtle.set_color(options.color(draws))
            draws += 1
            turtle.draw(step * action.scale)
            turtle.turn("up", action.direction * angle)
            turtle.draw(step * action.scale)
            continue

        if kind == "push":
            turtle.push()
            continue

        if kind == "pop":
            turtle.pop()
            continue

        raise ConfigError(f"Unknown action kind {kind!r} for symbol {sym!r}")

    return draws


def start_turtle(buffer: VoxelBuffer, options: RenderOptions) -> Turtle:
    """Place a turtle at the center of the floor plus ``options.offset``."""
    size_x, size_y, _ = buffer.dimensions()
    ox, oy, oz = options.offset
    return Turtle(
        buffer,
        position=(size_x / 2 + ox, size_y / 2 + oy, oz),
        forward=(math.cos(options.heading), math.sin(options.heading), 0.0),
        up=(0.0, 0.0, 1.0),
        color=options.color(0),
    )


def render(
    l_system: LSystem,
    options: RenderOptions,
    *,
    symbols: Iterable[str] | None = None,
) -> VoxelBuffer:
    """Derive ``l_system`` and draw it into a fresh VoxelBuffer.

    ``symbols`` overrides the derived string (e.g. a bounded stream preview).
    """
    buffer = VoxelBuffer(*options.size)
    turtle = start_turtle(buffer, options)
    if symbols is None:
        symbols = l_system.derive(options.derivation_length)

    logger.info(
        "rendering %r at derivation length %d into %s",
        l_system.name,
        options.derivation_length,
        options.size,
    )
    draws = interpret(symbols, turtle, options)
    if turtle.skipped:
        logger.warning(
            "%d samples fell outside the %s volume and were skipped",
            turtle.skipped,
            options.size,
        )
    logger.info("%d segments drawn, %d voxels set", draws, buffer.count_filled())
    return buffer


def render_to_file(l_system: LSystem, options: RenderOptions, path: str) -> VoxelBuffer:
    buffer = render(l_system, options)
    nbytes = write_vox(buffer, path)
    logger.info("wrote %d bytes to %s", nbytes, path)
    return buffer


# -------------------------
# .vox writing
# -------------------------

VOX_MAGIC = b"VOX "
VOX_VERSION = 150
PALETTE_SIZE = 256
MAX_COLORS = PALETTE_SIZE - 1
MAX_EXTENT = 256


def _ensure_parent_dir(path: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)


def _chunk(chunk_id: bytes, content: bytes = b"", children: bytes = b"") -> bytes:
    header = chunk_id + struct.pack("<II", len(content), len(children))
    return header + content + children


def build_palette(buffer: VoxelBuffer) -> tuple[list[Rgba], list[tuple[Cell, int]]]:
    """Index the filled voxels' colors in first-seen order, starting at 1.

    Returns ``(colors, voxels)`` where ``colors[i]`` has palette index
    ``i + 1`` and ``voxels`` pairs each filled cell with its index.
    """
    indices: dict[Rgba, int] = {}
    voxels: list[tuple[Cell, int]] = []
    for cell, color in buffer.filled():
        index = indices.get(color)
        if index is None:
            if len(indices) >= MAX_COLORS:
                raise PaletteOverflow(
                    f"more than {MAX_COLORS} distinct colors in the volume"
                )
            index = len(indices) + 1
            indices[color] = index
        voxels.append((cell, index))
    return list(indices), voxels


def serialize(buffer: VoxelBuffer) -> bytes:
    """Encode ``buffer`` as a .vox file.

    Layout: magic, version, then a MAIN chunk whose children are SIZE, XYZI
    and RGBA. The RGBA table always has 256 entries; entry ``i`` is palette
    index ``i + 1`` and unused entries are zero.
    """
    size = buffer.dimensions()
    if max(size) > MAX_EXTENT:
        raise InvalidDimension(
            f"extents {size} exceed {MAX_EXTENT}; .vox coordinates are 8-bit"
        )
    colors, voxels = build_palette(buffer)

    xyzi = bytearray(struct.pack("<I", len(voxels)))
    for (x, y, z), index in voxels:
        xyzi += struct.pack("<4B", x, y, z, index)

    palette = bytearray(PALETTE_SIZE * 4)
    for i, color in enumerate(colors):
        palette[i * 4 : i * 4 + 4] = bytes(color)

    children = (
        _chunk(b"SIZE", struct.pack("<3I", *size))
        + _chunk(b"XYZI", bytes(xyzi))
        + _chunk(b"RGBA", bytes(palette))
    )
    header = VOX_MAGIC + struct.pack("<I", VOX_VERSION)
    return header + _chunk(b"MAIN", children=children)


def write_vox(buffer: VoxelBuffer, path: str) -> int:
    # Encode before opening so a failed serialize leaves no file behind.
    data = serialize(buffer)
    _ensure_parent_dir(path)
    with open(path, "wb") as f:
        f.write(data)
    return len(data)


# -------------------------
# .vox reading
# -------------------------


@dataclass(frozen=True)
class VoxModel:
    version: int
    size: tuple[int, int, int]
    voxels: list[tuple[Cell, int]]
    # palette[i] is the color of palette index i + 1
    palette: list[Rgba]

    def color_of(self, index: int) -> Rgba:
        if not 1 <= index <= MAX_COLORS:
            raise VoxFormatError(f"palette index {index} not in 1..{MAX_COLORS}")
        return self.palette[index - 1]


def _read_chunk(data: bytes, offset: int) -> tuple[bytes, bytes, bytes, int]:
    if offset + 12 > len(data):
        raise VoxFormatError(f"truncated chunk header at offset {offset}")
    chunk_id = data[offset : offset + 4]
    content_len, children_len = struct.unpack_from("<II", data, offset + 4)
    start = offset + 12
    end = start + content_len + children_len
    if end > len(data):
        raise VoxFormatError(f"chunk {chunk_id!r} overruns the data")
    split = start + content_len
    return chunk_id, data[start:split], data[split:end], end


def parse_vox(data: bytes) -> VoxModel:
    """Read back the SIZE, XYZI and RGBA chunks of a single-model .vox file."""
    if len(data) < 8 or data[:4] != VOX_MAGIC:
        raise VoxFormatError("missing 'VOX ' magic")
    (version,) = struct.unpack_from("<I", data, 4)
    chunk_id, _, children, _ = _read_chunk(data, 8)
    if chunk_id != b"MAIN":
        raise VoxFormatError(f"expected MAIN chunk, got {chunk_id!r}")

    size: tuple[int, int, int] | None = None
    voxels: list[tuple[Cell, int]] = []
    palette: list[Rgba] | None = None
    offset = 0
    while offset < len(children):
        chunk_id, content, _, offset = _read_chunk(children, offset)
        if chunk_id == b"SIZE":
            if len(content) < 12:
                raise VoxFormatError("SIZE chunk is too short")
            sx, sy, sz = struct.unpack_from("<3I", content)
            size = (sx, sy, sz)
        elif chunk_id == b"XYZI":
            if len(content) < 4:
                raise VoxFormatError("XYZI chunk is too short")
            (count,) = struct.unpack_from("<I", content)
            if len(content) < 4 + 4 * count:
                raise VoxFormatError(f"XYZI chunk declares {count} voxels")
            voxels = [
                ((x, y, z), i)
                for x, y, z, i in struct.iter_unpack("<4B", content[4 : 4 + 4 * count])
            ]
        elif chunk_id == b"RGBA":
            if len(content) < PALETTE_SIZE * 4:
                raise VoxFormatError("RGBA chunk is too short")
            palette = [
                (r, g, b, a)
                for r, g, b, a in struct.iter_unpack("<4B", content[: PALETTE_SIZE * 4])
            ]
        else:
            logger.debug("skipping chunk %r", chunk_id)

    if size is None:
        raise VoxFormatError("missing SIZE chunk")
    if palette is None:
        raise VoxFormatError("missing RGBA chunk")
    return VoxModel(version=version, size=size, voxels=voxels, palette=palette)


def read_vox(path: str) -> VoxModel:
    with open(path, "rb") as f:
        return parse_vox(f.read())


# -------------------------
# Config parsing
# -------------------------

_AXES = ("up", "left", "forward")


def _as_axis(x: Any, path: str) -> Axis:
    _require(x in _AXES, f"{path} must be one of {', '.join(_AXES)}")
    return cast(Axis, x)


def _as_direction(x: Any, path: str) -> int:
    _require(
        isinstance(x, int) and not isinstance(x, bool) and x in (-1, 1),
        f"{path} must be -1 or 1",
    )
    return int(x)


def parse_action(obj: Any, path: str) -> Action:
    action = _as_dict(obj, path)
    atype = _as_str(action.get("type"), f"{path}.type")

    if atype == "forward":
        draw = _as_bool(action.get("draw"), f"{path}.draw")
        scale = _as_float(action.get("step", 1), f"{path}.step")
        return Action("draw" if draw else "move", scale=scale)

    if atype == "turn":
        return Action(
            "turn",
            axis=_as_axis(action.get("axis", "up"), f"{path}.axis"),
            direction=_as_direction(action.get("direction"), f"{path}.direction"),
            scale=_as_float(action.get("angle", 1), f"{path}.angle"),
        )

    if atype == "turn_abs":
        return Action(
            "turn_abs",
            axis=_as_axis(action.get("axis", "up"), f"{path}.axis"),
            degrees=_as_float(action.get("angle"), f"{path}.angle"),
        )

    if atype == "draw_turn":
        return Action(
            "draw_turn",
            direction=_as_direction(action.get("direction"), f"{path}.direction"),
            scale=_as_float(action.get("step", 1), f"{path}.step"),
        )

    if atype in ("push", "pop", "noop"):
        return Action(cast(ActionKind, atype))

    raise ConfigError(f"{path}.type: unknown command type '{atype}'")


def _parse_rules(obj: Any) -> dict[str, str]:
    if isinstance(obj, list):
        rules: dict[str, str] = {}
        for i, text in enumerate(obj):
            lhs, rhs = parse_production(_as_str(text, f"rules[{i}]"))
            rules[lhs] = rhs
        return rules

    rules_obj = _as_dict(obj, "rules")
    rules = {}
    for k, v in rules_obj.items():
        _require(
            isinstance(k, str) and len(k) == 1,
            "rules keys must be single-character strings",
        )
        rules[k] = _as_str(v, f"rules['{k}']")
    return rules


def _parse_color(obj: Any) -> ColorStrategy:
    color = _as_dict(obj, "color")
    mode = _as_str(color.get("mode", "solid"), "color.mode")
    if mode == "solid":
        return solid(_as_rgba(color.get("rgba", list(BLACK)), "color.rgba"))
    if mode == "rainbow":
        steps = _as_int(color.get("steps", 250), "color.steps")
        _require(1 <= steps <= MAX_COLORS, f"color.steps must be 1..{MAX_COLORS}")
        return rainbow(steps)
    raise ConfigError(f"color.mode must be 'solid' or 'rainbow', got {mode!r}")


def parse_config(obj: dict[str, Any]) -> RenderConfig:
    obj = _as_dict(obj, "root")

    name = _as_str(obj.get("name", "lsystem"), "name")
    axiom = _as_str(obj.get("axiom", ""), "axiom")
    _require(len(axiom) > 0, "axiom must be non-empty")

    iterations = _as_int(obj.get("iterations", 0), "iterations")
    _require(iterations >= 0, "iterations must be >= 0")

    rules = _parse_rules(obj.get("rules", {}))

    turtle = _as_dict(obj.get("turtle", {}), "turtle")
    angle_deg = _as_float(turtle.get("angle", 90), "turtle.angle")
    step = _as_float(turtle.get("step", 2), "turtle.step")
    _require(step > 0, "turtle.step must be > 0")
    heading_deg = _as_float(turtle.get("heading", 90), "turtle.heading")

    offset_obj = _as_dict(turtle.get("offset", {}), "turtle.offset")
    ox, oy, oz = (
        _as_float(offset_obj.get(axis, 0), f"turtle.offset.{axis}") for axis in "xyz"
    )

    commands = dict(DEFAULT_COMMANDS)
    commands_obj = _as_dict(turtle.get("commands", {}), "turtle.commands")
    for sym, action in commands_obj.items():
        _require(
            isinstance(sym, str) and len(sym) == 1,
            "turtle.commands keys must be single-character strings",
        )
        commands[sym] = parse_action(action, f"turtle.commands['{sym}']")

    default_action = _as_str(
        turtle.get("default_action", "noop"), "turtle.default_action"
    )
    _require(
        default_action in _FALLBACK_ACTIONS,
        "turtle.default_action must be 'forward_draw', 'forward_move', or 'noop'",
    )

    volume = _as_dict(obj.get("volume", {}), "volume")
    size_obj = volume.get("size", [64, 64, 64])
    _require(
        isinstance(size_obj, list) and len(size_obj) == 3,
        "volume.size must be a list of 3 integers",
    )
    sx, sy, sz = (_as_int(v, f"volume.size[{i}]") for i, v in enumerate(size_obj))
    _require(
        all(0 < v <= MAX_EXTENT for v in (sx, sy, sz)),
        f"volume.size entries must be 1..{MAX_EXTENT}",
    )

    options = RenderOptions(
        derivation_length=iterations,
        step_size=step,
        angle=math.radians(angle_deg),
        size=(sx, sy, sz),
        offset=(ox, oy, oz),
        heading=math.radians(heading_deg),
        color=_parse_color(obj.get("color", {})),
        commands=MappingProxyType(commands),
        default_action=cast(_DefaultAction, default_action),
    )
    return RenderConfig(l_system=LSystem(name, axiom, rules), options=options)


def load_json(path: str) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        try:
            return cast(dict[str, Any], json.load(f))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e


def dump_json(obj: dict[str, Any], path: str) -> None:
    _ensure_parent_dir(path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False)
        f.write("\n")


# -------------------------
# Random config generator
# -------------------------

_TURN_SYMBOLS = "+-&^\\/"


def _random_balanced_word(
    rng: random.Random, length: int, *, p_branch: float = 0.20
) -> str:
    """Random replacement word over F, turn symbols and balanced brackets."""
    word: list[str] = []
    depth = 0

    for _ in range(length):
        r = rng.random()
        if r < p_branch and depth < 3:
            word.append("[")
            depth += 1
            continue
        # At depth 0 the ']' share falls through to forward/turn symbols.
        if r < p_branch * 2 and depth > 0:
            word.append("]")
            depth -= 1
            continue

        if rng.random() < 0.5:
            word.append("F")
        else:
            word.append(rng.choice(_TURN_SYMBOLS))

    word.extend("]" * depth)

    if "F" not in word:
        word.append("F")

    return "".join(word)


def generate_random_config(seed: int | None = None) -> dict[str, Any]:
    rng = random.Random(seed)

    angle = rng.choice([15, 20, 22.5, 25, 30, 45, 60, 90])
    iterations = rng.randint(2, 4)
    step = rng.choice([1, 2, 3])

    if rng.random() < 0.5:
        axiom = "X"
        rules = {
            "X": "F[" + rng.choice(_TURN_SYMBOLS) + "X]" + rng.choice("+-") + "FX",
            "F": _random_balanced_word(rng, rng.randint(4, 10)),
        }
    else:
        axiom = "F"
        rules = {"F": _random_balanced_word(rng, rng.randint(8, 16))}

    if rng.random() < 0.5:
        color: dict[str, Any] = {"mode": "rainbow", "steps": rng.choice([64, 128, 250])}
    else:
        rgb = [rng.randint(0, 255) for _ in range(3)]
        color = {"mode": "solid", "rgba": rgb + [255]}

    cfg = {
        "name": "random",
        "axiom": axiom,
        "iterations": iterations,
        "rules": rules,
        "turtle": {
            "angle": angle,
            "step": step,
            "heading": 90,
            "offset": {"x": 0, "y": 0, "z": 32},
            "commands": {"X": {"type": "noop"}},
        },
        "volume": {"size": [64, 64, 64]},
        "color": color,
    }

    # Generated configs must always parse.
    parse_config(cfg)
    return cfg


# -------------------------
# CLI / Help
# -------------------------

HELP_EPILOG = r"""
INPUT JSON SYNTAX (render)

The renderer consumes a single JSON file describing:
  - an L-system (axiom, rules, iterations)
  - a turtle interpretation (angle/step/heading/offset + a command table)
  - the output volume and the pen colors

Top-level keys

  name: string (optional)
      Used for the default output file name: <name>_<iterations>.vox

  axiom: string (required)
  iterations: integer >= 0 (default 0)

  rules: object mapping single-character string -> string, or a list of
      "A→AB" / "A->AB" strings. Symbols without a rule rewrite to themselves.

  turtle: object (optional)
    turtle.angle: degrees (default 90)
    turtle.step: number > 0 (default 2), in voxels
    turtle.heading: degrees in the xy plane (default 90 = +Y)
    turtle.offset: {x, y, z} added to the start point (floor center)
    turtle.default_action: "noop" (default), "forward_move" or "forward_draw"
        What symbols missing from the command table do.
    turtle.commands: object mapping single-character symbol -> action object.
        Entries extend or override the default table:
          F draw, f move, + - turn (yaw), & ^ pitch, \ / roll,
          | turn around, [ push, ] pop

        Action objects
          { "type": "forward", "draw": true|false, "step": <multiplier> }
          { "type": "turn", "direction": +1|-1, "angle": <multiplier>,
            "axis": "up"|"left"|"forward" }
          { "type": "turn_abs", "angle": <degrees>, "axis": ... }
          { "type": "draw_turn", "direction": +1|-1 }   draw, turn, draw
          { "type": "push" }, { "type": "pop" }, { "type": "noop" }

  volume: object (optional)
    volume.size: [x, y, z] (default [64, 64, 64]), each 1..256

  color: object (optional)
    { "mode": "solid", "rgba": [r, g, b, a] }   (default black)
    { "mode": "rainbow", "steps": 1..255 }      (default 250)

Example (dragon curve):

    {
      "name": "dragon",
      "axiom": "L",
      "iterations": 8,
      "rules": ["L→L+R+", "R→-L-R"],
      "turtle": {
        "commands": {
          "L": {"type": "draw_turn", "direction": 1},
          "R": {"type": "draw_turn", "direction": -1}
        }
      },
      "color": {"mode": "rainbow"}
    }
"""


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="voxel_lsystem.py",
        description="L-system renderer that outputs MagicaVoxel .vox files.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    p.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Logging verbosity (default: WARNING).",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    pr = sub.add_parser("render", help="Render an L-system JSON config to a .vox file.")
    pr.add_argument("config", help="Path to the input JSON config.")
    pr.add_argument(
        "output",
        nargs="?",
        default=None,
        help="Path to write the .vox output (default: <name>_<iterations>.vox).",
    )
    pr.add_argument(
        "--default-action",
        choices=["forward_draw", "forward_move", "noop"],
        default=None,
        help="Override turtle.default_action for symbols without a command.",
    )

    pv = sub.add_parser("validate", help="Validate a JSON config and print a summary.")
    pv.add_argument("config", help="Path to the input JSON config.")

    pg = sub.add_parser("random", help="Generate a random JSON config.")
    pg.add_argument("output", help="Where to write the generated JSON file.")
    pg.add_argument(
        "--seed", type=int, default=None, help="Seed for repeatable randomness."
    )

    pi = sub.add_parser("inspect", help="Summarize a .vox file.")
    pi.add_argument("vox", help="Path to the .vox file.")

    return p


# -------------------------
# Commands
# -------------------------


def default_output_name(name: str, iterations: int) -> str:
    safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in name) or "lsystem"
    return f"{safe}_{iterations}.vox"


def cmd_render(
    config_path: str, output_path: str | None, default_action: _DefaultAction | None
) -> str:
    cfg = parse_config(load_json(config_path))
    options = cfg.options
    if default_action is not None:
        options = replace(options, default_action=default_action)
    if output_path is None:
        output_path = default_output_name(cfg.l_system.name, options.derivation_length)
    render_to_file(cfg.l_system, options, output_path)
    return output_path


_VALIDATE_SYMBOL_LIMIT = 10_000


def cmd_validate(config_path: str) -> None:
    cfg = parse_config(load_json(config_path))
    lsys, opts = cfg.l_system, cfg.options

    print(f"name: {lsys.name}")
    print(f"axiom length: {len(lsys.axiom)}")
    print(f"iterations: {opts.derivation_length}")
    print(f"rules: {len(lsys.rules)}")
    print(
        "turtle: "
        f"angle={math.degrees(opts.angle):g}deg step={opts.step_size:g} "
        f"heading={math.degrees(opts.heading):g}deg offset={opts.offset}"
    )
    print(f"commands: {len(opts.commands)}")
    print(f"volume: {opts.size}")

    # Bounded preview to catch render-time failures without a full expansion.
    raw = stream_expand(lsys.axiom, lsys.rules, opts.derivation_length)
    bounded = list(itertools.islice(raw, _VALIDATE_SYMBOL_LIMIT))
    truncated = len(bounded) == _VALIDATE_SYMBOL_LIMIT
    buffer = render(lsys, opts, symbols=bounded)
    sym_label = f"{len(bounded)}+" if truncated else str(len(bounded))
    print(f"symbols (sampled): {sym_label}")
    print(f"voxels: {buffer.count_filled()}")
    if truncated:
        print(
            f"warning: expansion exceeds {_VALIDATE_SYMBOL_LIMIT} symbols; "
            "voxel stats are based on the first portion only"
        )
    if not buffer.count_filled():
        raise ConfigError("Config produces no voxels inside the volume")


def cmd_random(output_path: str, seed: int | None) -> None:
    dump_json(generate_random_config(seed), output_path)


def cmd_inspect(vox_path: str) -> None:
    model = read_vox(vox_path)
    used = sorted({index for _, index in model.voxels})
    print(f"version: {model.version}")
    print(f"size: {model.size}")
    print(f"voxels: {len(model.voxels)}")
    print(f"colors: {len(used)}")


def main(argv: list[str] | None = None) -> int:
    ap = build_argparser()
    args = ap.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.cmd == "render":
            out = cmd_render(
                args.config,
                args.output,
                cast("_DefaultAction | None", args.default_action),
            )
            print(out)
        elif args.cmd == "validate":
            cmd_validate(args.config)
        elif args.cmd == "random":
            cmd_random(args.output, args.seed)
        elif args.cmd == "inspect":
            cmd_inspect(args.vox)
        else:
            raise AssertionError("unreachable")
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    except VoxFormatError as e:
        print(f"Format error: {e}", file=sys.stderr)
        return 2
    except RenderError as e:
        print(f"Render error: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"File error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

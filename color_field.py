"""
WFC Colour Field Generator v1

A single-file Python CLI tool that grows a smoothly-varying colour field over a
square grid. Growth starts at one random seed cell; every epoch each uncollapsed
neighbour of the frontier takes the mean HSL of its collapsed neighbours plus a
small random jitter. The finished field is written as a PNG via Pillow.

Usage:
    python color_field.py --debug
    python color_field.py --dim 300 --scale 2 --workers 4 --seed 7 --debug
    python color_field.py --import_settings settings.json
    python color_field.py --export_settings settings.json
"""

import argparse
import json
import os
import random
import re
import sys
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from PIL import Image


Index = Tuple[int, int]
Hsl = Tuple[float, float, float]
Rgba = Tuple[int, int, int, int]

# Bounds of the grid side length accepted at construction.
MIN_DIM: int = 1
MAX_DIM: int = 5000


# ---------------------------------------------------------------------------
# ColorModel
# ---------------------------------------------------------------------------
class ColorModel:
    """Conversions between 8-bit RGB and HSL.

    Hue is expressed in degrees in [0, 360), saturation and lightness in
    [0, 1]. Round trips are approximate because RGB channels are integers.
    """

    @staticmethod
    def rgb_to_hsl(r: int, g: int, b: int) -> Hsl:
        """Convert an 8-bit RGB triple to (h, s, l).

        Args:
            r: Red channel in [0, 255].
            g: Green channel in [0, 255].
            b: Blue channel in [0, 255].

        Returns:
            An (h, s, l) tuple with h in [0, 360) and s, l in [0, 1].
        """
        cmax_i = max(r, g, b)
        cmin_i = min(r, g, b)
        cmax = cmax_i / 255.0
        cmin = cmin_i / 255.0
        delta = cmax - cmin

        hue = 0.0
        if delta != 0.0:
            rf, gf, bf = r / 255.0, g / 255.0, b / 255.0
            if cmax_i == r:
                hue = ((gf - bf) / delta) % 6.0
            elif cmax_i == g:
                hue = (bf - rf) / delta + 2.0
            else:
                hue = (rf - gf) / delta + 4.0
        hue *= 60.0
        if hue < 0.0:
            hue += 360.0
        if hue >= 360.0:
            hue -= 360.0

        light = (cmax + cmin) / 2.0
        if light > 0.5:
            denom = 2.0 - cmax - cmin
        else:
            denom = cmax + cmin
        sat = 0.0 if denom == 0.0 else delta / denom

        return (hue, sat, light)

    @staticmethod
    def hsl_to_rgb(h: float, s: float, l: float) -> Rgba:
        """Convert (h, s, l) to an opaque 8-bit RGBA tuple.

        Channels are clamped to [0, 255] and truncated; alpha is always 255.

        Args:
            h: Hue in degrees.
            s: Saturation in [0, 1].
            l: Lightness in [0, 1].

        Returns:
            An (R, G, B, A) tuple of integers in [0, 255].
        """
        a = s * min(l, 1.0 - l)

        def channel(n: float) -> int:
            k = (n + h / 30.0) % 12.0
            v = (l - a * max(min(k - 3.0, 9.0 - k, 1.0), -1.0)) * 255.0
            return int(min(max(v, 0.0), 255.0))

        return (channel(0.0), channel(8.0), channel(4.0), 255)


# ---------------------------------------------------------------------------
# Pixel / Cell
# ---------------------------------------------------------------------------
@dataclass
class Pixel:
    """A colour cached as both RGBA and HSL.

    The two representations always agree: mutate only through set_color().
    """

    rgba: Rgba
    hsl: Hsl

    @classmethod
    def blank(cls) -> "Pixel":
        """Return an opaque black pixel."""
        rgba = (0, 0, 0, 255)
        return cls(rgba=rgba, hsl=ColorModel.rgb_to_hsl(0, 0, 0))

    @classmethod
    def from_random(cls, rng: random.Random) -> "Pixel":
        """Return a pixel with uniformly random RGB channels.

        Args:
            rng: Random generator to draw the channels from.

        Returns:
            A new opaque Pixel.
        """
        r, g, b = rng.randint(0, 255), rng.randint(0, 255), rng.randint(0, 255)
        return cls(rgba=(r, g, b, 255), hsl=ColorModel.rgb_to_hsl(r, g, b))

    def set_color(self, rgba: Optional[Rgba] = None, hsl: Optional[Hsl] = None) -> None:
        """Store one representation verbatim and derive the other.

        Exactly one of ``rgba`` or ``hsl`` must be given.

        Args:
            rgba: New (R, G, B, A) value.
            hsl: New (h, s, l) value.

        Raises:
            ValueError: If neither or both representations are supplied.
        """
        if (rgba is None) == (hsl is None):
            raise ValueError("set_color() takes exactly one of 'rgba' or 'hsl'")
        if rgba is not None:
            new_rgba = tuple(rgba)
            new_hsl = ColorModel.rgb_to_hsl(new_rgba[0], new_rgba[1], new_rgba[2])
        else:
            new_hsl = tuple(hsl)
            new_rgba = ColorModel.hsl_to_rgb(new_hsl[0], new_hsl[1], new_hsl[2])
        self.rgba, self.hsl = new_rgba, new_hsl


@dataclass
class Cell:
    """One grid cell. Collapse is permanent."""

    px: Pixel
    collapsed: bool = False

    @classmethod
    def blank(cls) -> "Cell":
        """Return a black, uncollapsed cell."""
        return cls(px=Pixel.blank())


# ---------------------------------------------------------------------------
# PropagationConfig
# ---------------------------------------------------------------------------
@dataclass
class PropagationConfig:
    """Tunable colour jitter and frontier pressure policy for a ColorField."""

    # Jitter bands added to the neighbour average: hue in degrees,
    # lightness as a fraction.
    hue_jitter: float = 20.0
    lightness_jitter: float = 0.1

    # Saturation of every generated cell.
    saturation: float = 1.0

    # Frontier sizes above this trigger pruning.
    frontier_threshold: int = 200

    # Fraction of non-blank frontier entries that survive a pruning pass.
    keep_probability: float = 0.25

    # Hard cap on entries retained by one pruning pass.
    max_retained: int = 100

    # Random seed (None = fresh OS entropy every run)
    seed: Optional[int] = None

    def validate(self) -> None:
        """Check every field is within its accepted range.

        Raises:
            ValueError: If a value is out of range.
        """
        if self.hue_jitter < 0 or self.lightness_jitter < 0:
            raise ValueError("Jitter bands must be non-negative")
        if not 0.0 <= self.saturation <= 1.0:
            raise ValueError(f"saturation must be in [0, 1], got {self.saturation}")
        if self.frontier_threshold < 1:
            raise ValueError(f"frontier_threshold must be >= 1, got {self.frontier_threshold}")
        if not 0.0 <= self.keep_probability <= 1.0:
            raise ValueError(f"keep_probability must be in [0, 1], got {self.keep_probability}")
        if self.max_retained < 1:
            raise ValueError(f"max_retained must be >= 1, got {self.max_retained}")


# ---------------------------------------------------------------------------
# AdjacencyTable
# ---------------------------------------------------------------------------
class AdjacencyTable:
    """Precomputed Moore neighbourhoods of a dim x dim grid.

    Entry i lists the (x, y) coordinates of the up-to-8 neighbours of the cell
    with linear index i = x * dim + y, clipped at the grid boundary.
    """

    _OFFSETS: Tuple[int, ...] = (-1, 0, 1)

    def __init__(self, dim: int) -> None:
        self._dim: int = dim
        self._table: Tuple[Tuple[Index, ...], ...] = self._build(dim)

    @classmethod
    def _build(cls, dim: int) -> Tuple[Tuple[Index, ...], ...]:
        table: List[Tuple[Index, ...]] = []
        for x in range(dim):
            for y in range(dim):
                neighbours = []
                for dx in cls._OFFSETS:
                    for dy in cls._OFFSETS:
                        xn, yn = x + dx, y + dy
                        if (dx, dy) == (0, 0):
                            continue
                        if 0 <= xn < dim and 0 <= yn < dim:
                            neighbours.append((xn, yn))
                table.append(tuple(neighbours))
        return tuple(table)

    @property
    def dim(self) -> int:
        """Return the grid side length."""
        return self._dim

    def __len__(self) -> int:
        return len(self._table)

    def __getitem__(self, idx: int) -> Tuple[Index, ...]:
        return self._table[idx]

    def of(self, x: int, y: int) -> Tuple[Index, ...]:
        """Return the neighbours of the cell at (x, y)."""
        return self._table[x * self._dim + y]


# ---------------------------------------------------------------------------
# Frontier
# ---------------------------------------------------------------------------
class Frontier:
    """Insertion-ordered, duplicate-free set of active grid coordinates."""

    def __init__(self, coords: Iterable[Index] = ()) -> None:
        self._items: Dict[Index, None] = dict.fromkeys(coords)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, coord: Index) -> bool:
        return coord in self._items

    def __iter__(self) -> Iterator[Index]:
        return iter(self._items)

    def snapshot(self) -> List[Index]:
        """Return a copy of the current entries in insertion order."""
        return list(self._items)

    def add(self, coord: Index) -> bool:
        """Insert a coordinate unless already present.

        Returns:
            True if the coordinate was inserted.
        """
        if coord in self._items:
            return False
        self._items[coord] = None
        return True

    def remove(self, coord: Index) -> None:
        """Remove a coordinate that must be present.

        Raises:
            RuntimeError: If the coordinate is not in the frontier.
        """
        try:
            del self._items[coord]
        except KeyError:
            raise RuntimeError(f"Frontier invariant broken: {coord} is not queued")

    def replace(self, coords: Iterable[Index]) -> None:
        """Discard every entry and queue ``coords`` instead."""
        self._items = dict.fromkeys(coords)


# ---------------------------------------------------------------------------
# ColorField
# ---------------------------------------------------------------------------
class ColorField:
    """A dim x dim grid of cells grown outward from a single seed.

    Cells are stored row-major with linear index i = x * dim + y. Call
    epoch() repeatedly until is_done(); the field itself has no stop
    condition and further epochs are harmless.

    Attributes:
        dim: Grid side length.
        cells: The dim * dim cells.
        config: Colour jitter and frontier pressure policy.
        adjacency: Moore neighbourhood lookup shared by all epochs.
        frontier: Coordinates driving the next epoch.
        collapsed_cnt: Cells collapsed by propagation (the seed excluded).
        epoch_idx: Number of epochs run so far.
        seed_cell: Coordinate of the seed cell.
    """

    def __init__(
        self,
        dim: int,
        config: Optional[PropagationConfig] = None,
        seed_cell: Optional[Index] = None,
        cells: Optional[List[Cell]] = None,
    ) -> None:
        """Build a field with a random singleton seed.

        Args:
            dim: Grid side length in [MIN_DIM, MAX_DIM].
            config: Propagation policy (defaults to PropagationConfig()).
            seed_cell: Force the seed coordinate instead of drawing it.
            cells: Pre-built cell buffer of length dim * dim; a blank buffer
                is allocated when omitted.

        Raises:
            ValueError: If dim, seed_cell, config or the buffer length is
                invalid.
        """
        if not isinstance(dim, int) or isinstance(dim, bool):
            raise ValueError(f"dim must be an integer, got {dim!r}")
        if dim < MIN_DIM or dim > MAX_DIM:
            raise ValueError(f"dim must be in [{MIN_DIM}, {MAX_DIM}], got {dim}")
        self.config: PropagationConfig = config if config is not None else PropagationConfig()
        self.config.validate()

        if cells is None:
            cells = [Cell.blank() for _ in range(dim * dim)]
        elif len(cells) != dim * dim:
            raise ValueError(f"Cell buffer must hold {dim * dim} cells, got {len(cells)}")

        self.dim: int = dim
        self.cells: List[Cell] = cells
        self.rng: random.Random = random.Random(self.config.seed)
        self.adjacency: AdjacencyTable = AdjacencyTable(dim)
        self.epoch_idx: int = 0

        if seed_cell is None:
            seed_cell = (self.rng.randrange(dim), self.rng.randrange(dim))
        else:
            self._check_bounds(seed_cell[0], seed_cell[1], ValueError)
        sx, sy = seed_cell
        seed = self.cells[sx * dim + sy]
        seed.px = Pixel.from_random(self.rng)
        seed.collapsed = True

        self.seed_cell: Index = (sx, sy)
        self.frontier: Frontier = Frontier([self.seed_cell])
        self.collapsed_cnt: int = sum(1 for c in self.cells if c.collapsed) - 1

    @classmethod
    def from_buffer(
        cls,
        buffer: List[Cell],
        dim: int,
        config: Optional[PropagationConfig] = None,
        seed_cell: Optional[Index] = None,
    ) -> "ColorField":
        """Build a field over a caller-supplied cell buffer.

        The buffer is adopted as-is (not copied) and the seed cell is
        collapsed afterwards, exactly as in the blank constructor.

        Args:
            buffer: dim * dim cells in linear index order, usually from
                RegionInitializer.initialize().
            dim: Grid side length.
            config: Propagation policy.
            seed_cell: Optional forced seed coordinate.

        Returns:
            A new ColorField.
        """
        return cls(dim, config=config, seed_cell=seed_cell, cells=buffer)

    def __len__(self) -> int:
        return len(self.cells)

    # -- accessors ----------------------------------------------------------

    def _check_bounds(self, x: int, y: int, error: type) -> None:
        if not (0 <= x < self.dim and 0 <= y < self.dim):
            raise error(f"Coordinate ({x}, {y}) outside a {self.dim}x{self.dim} field")

    def read_pixel(self, x: int, y: int) -> Rgba:
        """Return the RGBA colour of the cell at (x, y).

        Raises:
            IndexError: If (x, y) lies outside the grid.
        """
        self._check_bounds(x, y, IndexError)
        return self.cells[x * self.dim + y].px.rgba

    def is_collapsed(self, x: int, y: int) -> bool:
        """Return whether the cell at (x, y) has been collapsed."""
        self._check_bounds(x, y, IndexError)
        return self.cells[x * self.dim + y].collapsed

    def is_done(self) -> bool:
        """Return True once every cell besides the seed has been collapsed."""
        return self.collapsed_cnt >= len(self.cells) - 1

    def frontier_coords(self) -> List[Index]:
        """Return a copy of the current frontier in insertion order."""
        return self.frontier.snapshot()

    def to_rgba_bytes(self) -> bytes:
        """Return the flat RGBA buffer, four bytes per cell in index order."""
        return b"".join(bytes(c.px.rgba) for c in self.cells)

    # -- propagation --------------------------------------------------------

    def is_blank(self, coord: Index) -> bool:
        """Return True if every neighbour of ``coord`` is collapsed."""
        cells, dim = self.cells, self.dim
        return all(cells[x * dim + y].collapsed for x, y in self.adjacency.of(*coord))

    def _generate_hsl(self, coord: Index) -> Optional[Hsl]:
        """Average the collapsed neighbours of ``coord`` and add jitter.

        Returns:
            The new (h, s, l), or None when no neighbour is collapsed yet.
        """
        cells, dim = self.cells, self.dim
        hue_sum = 0.0
        light_sum = 0.0
        count = 0
        for x, y in self.adjacency.of(*coord):
            cell = cells[x * dim + y]
            if cell.collapsed:
                hue_sum += cell.px.hsl[0]
                light_sum += cell.px.hsl[2]
                count += 1
        if count == 0:
            return None

        cfg = self.config
        hue = hue_sum / count + self.rng.uniform(-cfg.hue_jitter, cfg.hue_jitter)
        light = light_sum / count + self.rng.uniform(-cfg.lightness_jitter, cfg.lightness_jitter)

        hue %= 360.0
        if hue >= 360.0:
            hue = 0.0
        light = min(max(light, 0.0), 1.0)
        return (hue, cfg.saturation, light)

    def _collapse(self, coord: Index) -> bool:
        """Collapse an uncollapsed cell from its neighbours, if it has any.

        Returns:
            True if the cell was collapsed.
        """
        cell = self.cells[coord[0] * self.dim + coord[1]]
        if cell.collapsed:
            return False
        hsl = self._generate_hsl(coord)
        if hsl is None:
            return False
        cell.px.set_color(hsl=hsl)
        cell.collapsed = True
        self.collapsed_cnt += 1
        return True

    def epoch(self) -> None:
        """Run one propagation step.

        Expands every frontier coordinate into its neighbours, collapsing any
        uncollapsed ones, consumes the coordinates that drove this epoch, then
        applies pressure control and starvation recovery to the frontier.
        """
        frontier = self.frontier
        snapshot = frontier.snapshot()

        for coord in snapshot:
            # Boundary entries queued by starvation recovery may still be open.
            self._collapse(coord)
            for neighbour in self.adjacency.of(*coord):
                frontier.add(neighbour)
                self._collapse(neighbour)

        for coord in snapshot:
            frontier.remove(coord)

        if len(frontier) > self.config.frontier_threshold:
            self._prune_frontier()

        if len(frontier) <= 1 and not self.is_done():
            self._rebuild_frontier()

        self.epoch_idx += 1

    def run_epochs(self, count: int) -> None:
        """Run ``count`` epochs back to back.

        Raises:
            ValueError: If count is negative.
        """
        if count < 0:
            raise ValueError(f"Epoch count must be >= 0, got {count}")
        for _ in range(count):
            self.epoch()

    def _prune_frontier(self) -> None:
        cfg = self.config
        kept: List[Index] = []
        for coord in self.frontier:
            if self.is_blank(coord):
                continue
            if self.rng.random() >= cfg.keep_probability:
                continue
            kept.append(coord)
            if len(kept) >= cfg.max_retained:
                break
        self.frontier.replace(kept)

    def _rebuild_frontier(self) -> None:
        dim = self.dim
        self.frontier.replace(
            divmod(i, dim) for i, cell in enumerate(self.cells) if not cell.collapsed
        )


# ---------------------------------------------------------------------------
# RegionInitializer
# ---------------------------------------------------------------------------
def fill_region(start: int, length: int) -> Tuple[int, List[Cell]]:
    """Fill one index range with blank cells.

    Kept at module level so worker processes can unpickle it.

    Args:
        start: First linear index of the range.
        length: Number of cells in the range.

    Returns:
        A (start, cells) tuple.
    """
    return start, [Cell.blank() for _ in range(length)]


class RegionInitializer:
    """Builds the initial cell buffer from independently filled ranges."""

    @staticmethod
    def partition(total: int, worker_count: int) -> List[Tuple[int, int]]:
        """Split [0, total) into contiguous (start, length) ranges.

        Every range has total // worker_count cells; the remainder is
        appended to the last range.

        Args:
            total: Number of cells to cover (dim * dim for a full grid).
            worker_count: Number of ranges (>= 1).

        Returns:
            A list of worker_count (start, length) tuples in index order.

        Raises:
            ValueError: If worker_count < 1 or total < 0.
        """
        if worker_count < 1:
            raise ValueError(f"worker_count must be >= 1, got {worker_count}")
        if total < 0:
            raise ValueError(f"total must be >= 0, got {total}")
        step = total // worker_count
        last = step + (total - worker_count * step)
        ranges = []
        for i in range(worker_count):
            ranges.append((i * step, last if i == worker_count - 1 else step))
        return ranges

    def initialize(self, dim: int, worker_count: int = 1) -> List[Cell]:
        """Fill every range and join them into one buffer.

        With a single worker the fill runs in-process; otherwise each range
        is filled by a separate process. The join waits for all ranges and
        fails as a whole if any range fails.

        Args:
            dim: Grid side length.
            worker_count: Number of ranges / worker processes.

        Returns:
            dim * dim blank cells in linear index order.

        Raises:
            RuntimeError: If a range fails or the joined buffer has the wrong
                length.
        """
        ranges = self.partition(dim * dim, worker_count)
        if worker_count == 1:
            results = [fill_region(start, length) for start, length in ranges]
        else:
            results = []
            with ProcessPoolExecutor(max_workers=worker_count) as ex:
                futures = {ex.submit(fill_region, start, length): start for start, length in ranges}
                for fut in as_completed(futures):
                    try:
                        results.append(fut.result())
                    except Exception as e:
                        raise RuntimeError(f"Region starting at {futures[fut]} failed: {e}") from e
        return self.join(results, dim)

    @staticmethod
    def join(results: Sequence[Tuple[int, List[Cell]]], dim: int) -> List[Cell]:
        """Concatenate region results in start-index order.

        Raises:
            RuntimeError: If the results do not cover exactly dim * dim cells.
        """
        buffer: List[Cell] = []
        for _, cells in sorted(results, key=lambda r: r[0]):
            buffer.extend(cells)
        if len(buffer) != dim * dim:
            raise RuntimeError(
                f"Region join produced {len(buffer)} cells, expected {dim * dim}"
            )
        return buffer


# ---------------------------------------------------------------------------
# EpochTimer
# ---------------------------------------------------------------------------
class EpochTimer:
    """Wall-clock stopwatch with named laps."""

    def __init__(self) -> None:
        self._start: float = 0.0
        self._laps: List[Tuple[str, float]] = []

    def start(self) -> None:
        """Reset the stopwatch and start timing."""
        self._start = time.perf_counter()
        self._laps = []

    def elapsed_from_start(self) -> float:
        """Return seconds elapsed since start()."""
        return time.perf_counter() - self._start

    def lap(self, label: str) -> float:
        """Record a lap since the previous lap (or start) and return it.

        Args:
            label: Name of the timed stage.

        Returns:
            The lap duration in seconds.
        """
        now = time.perf_counter()
        previous = self._start + sum(d for _, d in self._laps)
        duration = now - previous
        self._laps.append((label, duration))
        return duration

    @property
    def laps(self) -> List[Tuple[str, float]]:
        """Return the recorded (label, seconds) laps."""
        return list(self._laps)


# ---------------------------------------------------------------------------
# FieldRenderer
# ---------------------------------------------------------------------------
class FieldRenderer:
    """Paints a ColorField into a Pillow image.

    Cell (x, y) is drawn as a scale x scale square at pixel column x * scale,
    row y * scale.
    """

    MIN_SCALE: int = 1
    MAX_SCALE: int = 10

    def render(self, field: ColorField, scale: int = 1) -> Image.Image:
        """Render the field as an RGBA image of side dim * scale.

        Args:
            field: The field to paint.
            scale: Pixel size of one cell.

        Returns:
            A PIL Image in RGBA mode.

        Raises:
            ValueError: If scale is outside [MIN_SCALE, MAX_SCALE].
        """
        if scale < self.MIN_SCALE or scale > self.MAX_SCALE:
            raise ValueError(
                f"scale must be in [{self.MIN_SCALE}, {self.MAX_SCALE}], got {scale}"
            )
        dim = field.dim
        # Buffer rows are x, image rows are y.
        img = Image.frombytes("RGBA", (dim, dim), field.to_rgba_bytes())
        img = img.transpose(Image.Transpose.TRANSPOSE)
        if scale > 1:
            img = img.resize((dim * scale, dim * scale), Image.NEAREST)
        return img


# ---------------------------------------------------------------------------
# SettingsManager
# ---------------------------------------------------------------------------
class SettingsManager:
    """JSON import/export of parameter sets with CLI-precedence logic.

    JSON overrides defaults, explicit CLI args override JSON.
    """

    # Keys that are persisted to JSON, with the value types each accepts.
    _PERSISTED_TYPES: Dict[str, Tuple[type, ...]] = {
        "dim": (int,),
        "scale": (int,),
        "workers": (int,),
        "epochs": (int,),
        "seed": (int, type(None)),
        "hue_jitter": (int, float),
        "lightness_jitter": (int, float),
        "frontier_threshold": (int,),
        "keep_probability": (int, float),
        "max_retained": (int,),
        "file": (str,),
        "debug": (bool,),
    }
    _PERSISTED_KEYS: List[str] = list(_PERSISTED_TYPES)

    def export_settings(self, params: argparse.Namespace, path: str) -> None:
        """Export current parameters to a JSON file.

        Args:
            params: The resolved argparse Namespace.
            path: Output JSON file path.

        Raises:
            IOError: If the file cannot be written.
        """
        data: Dict = {key: getattr(params, key, None) for key in self._PERSISTED_KEYS}
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    def import_settings(self, path: str) -> Dict:
        """Import settings from a JSON file.

        Raises:
            FileNotFoundError: If the file does not exist.
            json.JSONDecodeError: If the file is not valid JSON.
        """
        with open(path, "r") as f:
            data = json.load(f)
        return data

    def merge_settings(
        self,
        defaults: argparse.Namespace,
        json_settings: Dict,
        explicit_keys: set,
    ) -> argparse.Namespace:
        """Merge JSON settings with CLI args, respecting precedence.

        Args:
            defaults: The argparse Namespace with default/CLI values.
            json_settings: Dictionary loaded from JSON.
            explicit_keys: Set of parameter names explicitly provided on CLI.

        Returns:
            The merged Namespace.

        Raises:
            ValueError: If the JSON is not an object or a value has the
                wrong type.
        """
        if not isinstance(json_settings, dict):
            raise ValueError("Settings file must contain a JSON object")
        for key in self._PERSISTED_KEYS:
            if key in json_settings and key not in explicit_keys:
                value = json_settings[key]
                accepted = self._PERSISTED_TYPES[key]
                # JSON true/false must not pass as a number.
                if (isinstance(value, bool) and bool not in accepted) or not isinstance(value, accepted):
                    names = " or ".join("null" if t is type(None) else t.__name__ for t in accepted)
                    raise ValueError(f"Setting '{key}' must be {names}, got {value!r}")
                setattr(defaults, key, value)
        return defaults


# ---------------------------------------------------------------------------
# Version helper
# ---------------------------------------------------------------------------
def _changelog_version(fallback: str = "0.0.0") -> str:
    """Read the highest version from CHANGELOG.md next to this script.

    Returns *fallback* when the file is missing or has no versioned headings.
    """
    changelog = os.path.join(os.path.dirname(os.path.abspath(__file__)), "CHANGELOG.md")
    try:
        with open(changelog, "r", encoding="utf-8") as fh:
            for line in fh:
                m = re.match(r"^##\s+\[(\d+\.\d+\.\d+)\]", line)
                if m:
                    return m.group(1)
    except OSError:
        pass
    return fallback


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
class Application:
    """Top-level entry point for the WFC Colour Field Generator.

    Orchestrates CLI argument parsing, settings loading, parallel buffer
    initialisation, propagation, PNG output, and debug reporting.
    """

    VERSION:      str = _changelog_version("1.0.0")
    BUILD_DATE:   str = "2026-10-18"
    TITLE:        str = "WFC Colour Field Generator"
    AUTHOR:       str = "Colour Field contributors"
    BANNER_WIDTH: int = 60

    def run(self) -> None:
        """Execute the full application pipeline.

        Returns:
            None
        """
        # Step 1: Parse CLI arguments and detect explicit keys
        args, explicit_keys = self._parse_args()

        # Step 2: Import settings if requested
        if args.import_settings:
            if not args.import_settings.lower().endswith(".json"):
                args.import_settings += ".json"
            try:
                manager = SettingsManager()
                json_data = manager.import_settings(args.import_settings)
                args = manager.merge_settings(args, json_data, explicit_keys)
            except FileNotFoundError:
                print(f"Error: Settings file not found: '{args.import_settings}'", file=sys.stderr)
                sys.exit(1)
            except json.JSONDecodeError as e:
                print(f"Error: Malformed JSON in settings file: {e}", file=sys.stderr)
                sys.exit(1)
            except ValueError as e:
                print(f"Error: Invalid settings file: {e}", file=sys.stderr)
                sys.exit(1)

        # Step 3: Export settings if requested
        export_path = None
        if args.export_settings:
            export_path = args.export_settings
            if not export_path.lower().endswith(".json"):
                export_path += ".json"
            try:
                SettingsManager().export_settings(args, export_path)
            except IOError as e:
                print(f"Error: Cannot write settings file: {e}", file=sys.stderr)
                sys.exit(1)

        # Step 4: Validate arguments the engine does not check itself
        if args.workers < 1:
            print(f"Error: workers must be >= 1, got {args.workers}", file=sys.stderr)
            sys.exit(1)
        if args.epochs < 0:
            print(f"Error: epochs must be >= 0, got {args.epochs}", file=sys.stderr)
            sys.exit(1)
        if not FieldRenderer.MIN_SCALE <= args.scale <= FieldRenderer.MAX_SCALE:
            print(f"Error: scale must be in [{FieldRenderer.MIN_SCALE}, "
                  f"{FieldRenderer.MAX_SCALE}], got {args.scale}", file=sys.stderr)
            sys.exit(1)

        config = PropagationConfig(
            hue_jitter=args.hue_jitter,
            lightness_jitter=args.lightness_jitter,
            frontier_threshold=args.frontier_threshold,
            keep_probability=args.keep_probability,
            max_retained=args.max_retained,
            seed=args.seed,
        )

        # Step 5: Build the cell buffer and the field
        timer = EpochTimer()
        timer.start()
        try:
            if not MIN_DIM <= args.dim <= MAX_DIM:
                raise ValueError(f"dim must be in [{MIN_DIM}, {MAX_DIM}], got {args.dim}")
            buffer = RegionInitializer().initialize(args.dim, args.workers)
            field = ColorField.from_buffer(buffer, args.dim, config=config)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        init_time = timer.lap("init")

        # Step 6: Propagate
        if args.epochs > 0:
            field.run_epochs(args.epochs)
        else:
            while not field.is_done():
                field.epoch()
        epoch_time = timer.lap("epochs")

        # Step 7: Render and save
        img = FieldRenderer().render(field, args.scale)
        out_file = args.file
        if not out_file.lower().endswith(".png"):
            out_file += ".png"
        img.save(out_file, "PNG")
        file_size = os.path.getsize(out_file)

        # Banner (always shown)
        self._print_banner()
        print(f"  Saved: {out_file} ({self._format_file_size(file_size)})")
        if export_path:
            print(f"  Saved: {export_path} ({self._format_file_size(os.path.getsize(export_path))})")

        # Step 8: Debug output
        if args.debug:
            self._print_debug(args, field, init_time, epoch_time)
        print()

    def _parse_args(self) -> Tuple[argparse.Namespace, set]:
        """Parse CLI arguments and detect which were explicitly provided.

        Returns:
            A tuple of (parsed Namespace, set of explicitly-provided key names).
        """
        parser = self._build_parser()
        args = parser.parse_args()

        # Second parse with SUPPRESS defaults to detect explicit keys
        suppress_parser = self._build_parser(suppress_defaults=True)
        explicit_args = suppress_parser.parse_args()
        explicit_keys = set(vars(explicit_args).keys())

        return args, explicit_keys

    def _build_parser(self, suppress_defaults: bool = False) -> argparse.ArgumentParser:
        """Build the argparse ArgumentParser.

        Args:
            suppress_defaults: If True, set all defaults to SUPPRESS to
                detect explicitly-provided CLI args.

        Returns:
            A configured ArgumentParser.
        """
        banner = self._banner_text()

        class _BannerParser(argparse.ArgumentParser):
            """ArgumentParser that prints the banner before help text."""

            def print_help(self, file=None):
                if file is None:
                    file = sys.stdout
                file.write(banner + "\n\n")
                super().print_help(file)

        parser = _BannerParser(
            description="WFC Colour Field Generator: grow a smooth colour field from a random seed.",
        )

        def default(value):
            return argparse.SUPPRESS if suppress_defaults else value

        parser.add_argument("--dim", type=int, default=default(200),
                            help=f"Grid side length in cells, {MIN_DIM}-{MAX_DIM} (default: 200)")
        parser.add_argument("--scale", type=int, default=default(3),
                            help="Pixels per cell, 1-10 (default: 3)")
        parser.add_argument("--workers", type=int, default=default(5),
                            help="Worker processes for buffer initialisation (default: 5)")
        parser.add_argument("--epochs", type=int, default=default(0),
                            help="Epochs to run, 0 = until the field is done (default: 0)")
        parser.add_argument("--seed", type=int, default=default(None),
                            help="Random seed for a reproducible field (default: random)")
        parser.add_argument("--hue_jitter", type=float, default=default(20.0),
                            help="Hue jitter band in degrees (default: 20)")
        parser.add_argument("--lightness_jitter", type=float, default=default(0.1),
                            help="Lightness jitter band (default: 0.1)")
        parser.add_argument("--frontier_threshold", type=int, default=default(200),
                            help="Frontier size that triggers pruning (default: 200)")
        parser.add_argument("--keep_probability", type=float, default=default(0.25),
                            help="Chance a frontier entry survives pruning (default: 0.25)")
        parser.add_argument("--max_retained", type=int, default=default(100),
                            help="Frontier entries kept by one pruning pass (default: 100)")
        parser.add_argument("--file", type=str, default=default("colorfield.png"),
                            help="Output PNG filename (default: colorfield.png)")
        parser.add_argument("--debug", nargs="?", const=True, default=default(False),
                            type=self._parse_bool_flag,
                            help="Enable debug output")
        parser.add_argument("--export_settings", type=str, default=None,
                            help="Export parameters to a JSON file")
        parser.add_argument("--import_settings", type=str, default=None,
                            help="Import parameters from a JSON file")

        return parser

    def _parse_bool_flag(self, value: str) -> bool:
        """Parse a boolean flag value ('true'/'false' or bare flag)."""
        if isinstance(value, bool):
            return value
        if value.lower() in ("true", "1", "yes"):
            return True
        if value.lower() in ("false", "0", "no"):
            return False
        raise argparse.ArgumentTypeError(f"Boolean value expected, got '{value}'")

    def _banner_text(self) -> str:
        """Build the application banner as a string."""
        inner = self.BANNER_WIDTH - 2
        lines = [
            "┌" + "─" * inner + "┐",
            f"│{'  Program:    ' + self.TITLE:<{inner}}│",
            f"│{'  Version:    ' + self.VERSION:<{inner}}│",
            f"│{'  Build Date: ' + self.BUILD_DATE:<{inner}}│",
            f"│{'  Author:     ' + self.AUTHOR:<{inner}}│",
            "└" + "─" * inner + "┘",
        ]
        return "\n".join(lines)

    def _print_banner(self) -> None:
        """Print the application banner to stdout."""
        print(self._banner_text())

    def _print_debug(
        self,
        args: argparse.Namespace,
        field: ColorField,
        init_time: float,
        epoch_time: float,
    ) -> None:
        """Print debug information to stdout.

        Args:
            args: The resolved parameters.
            field: The propagated field.
            init_time: Seconds spent building the cell buffer.
            epoch_time: Seconds spent running epochs.

        Returns:
            None
        """
        total = len(field)
        print(f"\n  Grid size:        {field.dim} x {field.dim} ({total} cells)")
        print(f"  Scale:            {args.scale}")
        print(f"  Workers:          {args.workers}")
        print(f"  Seed:             {args.seed if args.seed is not None else 'random'}")
        print(f"  Seed cell:        {field.seed_cell}")
        print(f"  Hue jitter:       {args.hue_jitter}")
        print(f"  Lightness jitter: {args.lightness_jitter}")
        print(f"  Frontier policy:  threshold={args.frontier_threshold}, "
              f"keep={args.keep_probability}, cap={args.max_retained}")
        print(f"  Init took:        {init_time:.2f} s")
        print(f"  Epochs run:       {field.epoch_idx}")
        print(f"  Epochs took:      {epoch_time:.2f} s")
        print(f"  Collapsed:        {field.collapsed_cnt} / {total - 1}")
        print(f"  Frontier size:    {len(field.frontier)}")
        print(f"  Done:             {field.is_done()}")

    def _format_file_size(self, size_bytes: int) -> str:
        """Format a file size in human-readable form (e.g. '1.23 MB')."""
        if size_bytes < 1024:
            return f"{size_bytes} B"
        elif size_bytes < 1024 * 1024:
            return f"{size_bytes / 1024:.2f} KB"
        else:
            return f"{size_bytes / (1024 * 1024):.2f} MB"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main() -> None:
    """Main entry point for the WFC Colour Field Generator."""
    if sys.stdout and hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    app = Application()
    app.run()


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
heightmap_stl.py

Convert microscope height-profile CSV exports (one row of heights per scan line,
comma-separated, no header) into a watertight ASCII STL solid.

Pipeline:
  1) resolve the XY pixel size from the microscope calibration table,
     or take an explicit mm-per-pixel factor
  2) read the CSV height grid
  3) optionally downsample by a fixed stride; the XY scale is multiplied by the
     stride so the physical footprint does not change
  4) triangulate the surface and close it with a flat bottom and four side walls
  5) write ASCII STL

Notes:
- All coordinates are treated as millimeters.
- An unknown microscope/magnification pair does not fail the conversion: the XY
  scale falls back to 1.0 and a [WARN] line is printed.
- Everything up to the final write happens in memory, so a failed conversion
  never leaves a partial STL behind.
"""


from __future__ import annotations

import argparse
import math
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np

from defaults import DEFAULTS


# ----------------------------
# Errors
# ----------------------------

class ConversionError(Exception):
    """Base class for every failure of a single CSV -> STL conversion."""


class LoadError(ConversionError):
    pass


class InvalidStrideError(ConversionError):
    pass


class InvalidScaleError(ConversionError):
    pass


class DegenerateGridError(ConversionError):
    pass


class WriteError(ConversionError):
    pass


# ----------------------------
# Scale resolution
# ----------------------------

# Keyence VHX pixel sizes (um) per magnification.
_PIXEL_SIZES_BY_MODEL: Dict[str, Dict[str, float]] = {
    "VHX-7100": {
        "20x": 5.2,
        "30x": 3.5,
        "40x": 2.6,
        "50x": 2.1,
        "80x": 1.3,
        "100x": 1.04,
        "150x": 0.69,
        "200x": 0.52,
        "300x": 0.35,
        "400x": 0.26,
        "500x": 0.208,
        "700x": 0.149,
        "1000x": 0.104,
        "1500x": 0.069,
        "2000x": 0.052,
        "2500x": 0.0417,
        "4000x": 0.0260,
        "5000x": 0.0208,
        "6000x": 0.0174,
    },
    "VHX-7020": {
        "20x": 7.3,
        "30x": 4.9,
        "40x": 3.7,
        "50x": 2.9,
        "80x": 1.8,
        "100x": 1.46,
        "150x": 0.98,
        "200x": 0.73,
        "300x": 0.49,
        "400x": 0.37,
        "500x": 0.293,
        "700x": 0.209,
        "1000x": 0.146,
        "1500x": 0.098,
        "2000x": 0.073,
        "2500x": 0.0586,
        "4000x": 0.0366,
        "5000x": 0.0293,
        "6000x": 0.0244,
    },
}

PIXEL_SIZES_UM: Dict[Tuple[str, str], float] = {
    (model, mag): size_um
    for model, table in _PIXEL_SIZES_BY_MODEL.items()
    for mag, size_um in table.items()
}

INSTRUMENTS: Tuple[str, ...] = tuple(_PIXEL_SIZES_BY_MODEL)


@dataclass(frozen=True)
class ScaleProfile:
    x: float  # mm per grid column
    y: float  # mm per grid row
    z: float  # height multiplier

    def downsampled(self, stride: int) -> "ScaleProfile":
        return replace(self, x=self.x * stride, y=self.y * stride)


def magnifications(instrument: str) -> List[str]:
    """Magnification labels known for `instrument`, lowest zoom first."""
    return [mag for model, mag in PIXEL_SIZES_UM if model == instrument]


def _is_magnification_label(value: Union[str, float]) -> bool:
    return isinstance(value, str) and value.strip().lower().endswith("x")


def _check_scale(name: str, value: float) -> float:
    if not math.isfinite(value) or value <= 0:
        raise InvalidScaleError(f"{name} must be a finite number > 0, got {value!r}")
    return float(value)


def _fallback_scale(magnification: Union[str, float], instrument: str) -> float:
    if instrument not in _PIXEL_SIZES_BY_MODEL:
        print(f"[WARN] Unknown microscope \"{instrument}\". Using default scale of 1.")
    else:
        print(
            f"[WARN] Unknown magnification \"{magnification}\" for microscope "
            f"\"{instrument}\". Using default scale of 1."
        )
    return 1.0


def resolve_xy_scale(
    magnification_or_scale: Union[str, float],
    instrument: str = DEFAULTS["instrument"],
) -> float:
    """
    Resolve the XY distance per pixel in mm.

    A label ending in "x" (e.g. "500x") is looked up in PIXEL_SIZES_UM for the
    given microscope; anything else is read as a raw mm-per-pixel factor.
    Unknown labels (and unknown microscopes) fall back to 1.0 with a warning.
    """
    if _is_magnification_label(magnification_or_scale):
        label = str(magnification_or_scale).strip().lower()
        pixel_um = PIXEL_SIZES_UM.get((instrument, label))
        if pixel_um is None:
            return _fallback_scale(magnification_or_scale, instrument)
        scale = pixel_um / 1000.0
        print(f"[SCALE] Using pixel size {pixel_um} um ({label} on {instrument}) -> {scale:g} mm")
        return scale

    try:
        scale = float(magnification_or_scale)
    except (TypeError, ValueError):
        return _fallback_scale(magnification_or_scale, instrument)
    return _check_scale("XY scale", scale)


def resolve_scale_profile(
    magnification_or_scale: Union[str, float] = DEFAULTS["magnification"],
    instrument: str = DEFAULTS["instrument"],
    *,
    y_scale: Optional[float] = None,
    z_scale: float = DEFAULTS["z_scale"],
) -> ScaleProfile:
    x = resolve_xy_scale(magnification_or_scale, instrument)
    y = x if y_scale is None else _check_scale("Y scale", float(y_scale))
    z = _check_scale("Z scale", float(z_scale))
    return ScaleProfile(x=x, y=y, z=z)


# ----------------------------
# CSV -> height grid
# ----------------------------

def _parse_row(path: Path, line_no: int, line: str) -> List[float]:
    values: List[float] = []
    for col_no, field in enumerate(line.split(","), 1):
        try:
            value = float(field)
        except ValueError:
            raise LoadError(
                f"{path}:{line_no}: column {col_no} is not numeric: {field.strip()!r}"
            ) from None
        if not math.isfinite(value):
            raise LoadError(f"{path}:{line_no}: column {col_no} is not a finite number: {field.strip()!r}")
        values.append(value)
    return values


def load_height_grid(path: Path) -> np.ndarray:
    """
    Loads a comma-separated height grid, one scan line per row, ignoring blank lines.
    Every row must have the same number of numeric values.
    Returns a read-only (rows, cols) float64 array.
    """
    path = Path(path)
    print(f"[1/5] Reading CSV: {path}")

    rows: List[List[float]] = []
    try:
        with path.open("r", encoding="utf-8-sig") as f:
            for line_no, line in enumerate(f, 1):
                s = line.strip()
                if not s:
                    continue

                values = _parse_row(path, line_no, s)
                if rows and len(values) != len(rows[0]):
                    raise LoadError(
                        f"{path}:{line_no}: expected {len(rows[0])} values, found {len(values)}"
                    )
                rows.append(values)

                if len(rows) % 1000 == 0:
                    print(f"  ... parsed {len(rows):,} rows (line {line_no:,})")
    except (OSError, UnicodeDecodeError) as e:
        raise LoadError(f"Cannot read {path}: {e}") from e

    if len(rows) < 2:
        raise LoadError(f"{path}: need at least 2 rows of height data, found {len(rows)}")

    grid = np.asarray(rows, dtype=np.float64)
    grid.setflags(write=False)
    print(f"  Done: {grid.shape[0]:,} x {grid.shape[1]:,} = {grid.size:,} samples")
    print(f"  Bounds Z: {float(grid.min()):.3f} .. {float(grid.max()):.3f}")
    return grid


def downsample(grid: np.ndarray, scale: ScaleProfile, stride: int) -> Tuple[np.ndarray, ScaleProfile]:
    """
    Keep every `stride`-th row and column (no averaging).
    X/Y scale are multiplied by `stride` so the footprint stays the same size.
    """
    if isinstance(stride, bool) or not isinstance(stride, (int, np.integer)) or stride < 1:
        raise InvalidStrideError(f"Downsample stride must be an integer >= 1, got {stride!r}")

    stride = int(stride)
    if stride == 1:
        return grid, scale

    rows, cols = grid.shape
    print(f"[2/5] Downsampling grid by stride={stride} (keeping every {stride}th row and column)...")
    small = grid[::stride, ::stride]
    print(f"  Grid size: {rows:,}x{cols:,} -> {small.shape[0]:,}x{small.shape[1]:,}")
    return small, scale.downsampled(stride)


# ----------------------------
# Height grid -> watertight solid
# ----------------------------

@dataclass(frozen=True)
class Mesh:
    triangles: np.ndarray  # (M, 3, 3) float64, vertex order is the winding
    normals: np.ndarray    # (M, 3) float64

    def __len__(self) -> int:
        return int(self.triangles.shape[0])

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        pts = self.triangles.reshape(-1, 3)
        return pts.min(axis=0), pts.max(axis=0)


def compute_normals(triangles: np.ndarray) -> np.ndarray:
    """Unit normals of (v2 - v1) x (v3 - v1); zero-area triangles get (0, 0, 0)."""
    a = triangles[:, 0]
    b = triangles[:, 1]
    c = triangles[:, 2]
    n = np.cross(b - a, c - a)
    norm = np.linalg.norm(n, axis=1)
    n = np.divide(n, norm[:, None], out=np.zeros_like(n), where=norm[:, None] != 0)
    return n


def _fixed_normals(count: int, normal: Tuple[float, float, float]) -> np.ndarray:
    return np.tile(np.asarray(normal, dtype=np.float64), (count, 1))


def _wall(edge: np.ndarray, base_z: float) -> np.ndarray:
    """
    Quads hanging from a boundary polyline (N, 3) down to base_z, two triangles each.
    `edge` must run opposite to the top surface's traversal of that boundary,
    otherwise the shared edges do not cancel and the solid is not closed.
    """
    p_top = edge[:-1]
    q_top = edge[1:]
    p_bot = p_top.copy()
    p_bot[:, 2] = base_z
    q_bot = q_top.copy()
    q_bot[:, 2] = base_z

    first = np.stack([p_top, q_top, p_bot], axis=1)
    second = np.stack([p_bot, q_top, q_bot], axis=1)
    return np.stack([first, second], axis=1).reshape(-1, 3, 3)


def build_solid(
    grid: np.ndarray,
    scale: ScaleProfile,
    base_thickness: float = DEFAULTS["base_thickness"],
) -> Mesh:
    """
    Triangulate the height grid and close it into a printable solid:
      - top surface: two triangles per grid cell, split along the same diagonal
      - bottom cap at z = (min height - base_thickness) * z scale
      - four side walls from the top boundary down to the bottom cap

    The bottom cap reuses the cell layout of the top surface with reversed
    winding, so its edges line up with the foot of every wall segment.
    """
    rows, cols = grid.shape
    if rows < 2 or cols < 2:
        raise DegenerateGridError(f"Need at least a 2 x 2 grid to triangulate, got {rows} x {cols}")

    print(f"[3/5] Building solid from {rows:,} x {cols:,} grid...")

    xs = np.arange(cols, dtype=np.float64) * scale.x
    ys = np.arange(rows, dtype=np.float64) * scale.y
    xv, yv = np.meshgrid(xs, ys)
    top = np.stack([xv, yv, np.asarray(grid, dtype=np.float64) * scale.z], axis=-1)

    v00 = top[:-1, :-1]
    v01 = top[:-1, 1:]
    v10 = top[1:, :-1]
    v11 = top[1:, 1:]

    # Per cell: A = (i,j) (i,j+1) (i+1,j), B = (i,j+1) (i+1,j+1) (i+1,j)
    tri_a = np.stack([v00, v01, v10], axis=2)
    tri_b = np.stack([v01, v11, v10], axis=2)
    top_tris = np.stack([tri_a, tri_b], axis=2).reshape(-1, 3, 3)
    top_normals = compute_normals(top_tris)

    base_z = float((float(grid.min()) - float(base_thickness)) * scale.z)
    bottom = top.copy()
    bottom[..., 2] = base_z
    b00 = bottom[:-1, :-1]
    b01 = bottom[:-1, 1:]
    b10 = bottom[1:, :-1]
    b11 = bottom[1:, 1:]

    # Bottom cap (reverse winding relative to top)
    base_tris = np.stack([
        np.stack([b00, b10, b01], axis=2),
        np.stack([b01, b10, b11], axis=2),
    ], axis=2).reshape(-1, 3, 3)

    # The top surface walks its boundary counter-clockwise seen from +Z,
    # so each wall takes that boundary in the opposite direction.
    walls = [
        (_wall(top[0, ::-1], base_z), (0.0, -1.0, 0.0)),   # front, y = 0
        (_wall(top[-1, :], base_z), (0.0, 1.0, 0.0)),      # back, y = max
        (_wall(top[:, 0], base_z), (-1.0, 0.0, 0.0)),      # left, x = 0
        (_wall(top[::-1, -1], base_z), (1.0, 0.0, 0.0)),   # right, x = max
    ]

    triangles = np.vstack([top_tris, base_tris] + [tris for tris, _ in walls])
    normals = np.vstack(
        [top_normals, _fixed_normals(base_tris.shape[0], (0.0, 0.0, -1.0))]
        + [_fixed_normals(tris.shape[0], normal) for tris, normal in walls]
    )

    wall_count = sum(tris.shape[0] for tris, _ in walls)
    print(f"  Top surface: {top_tris.shape[0]:,} triangles from {(rows - 1) * (cols - 1):,} cells.")
    print(f"[SOLID] Added bottom cap ({base_tris.shape[0]:,} tris) at z={base_z:.6g} and walls ({wall_count:,} tris).")
    print(f"[SOLID] Total triangles: {triangles.shape[0]:,}")

    return Mesh(triangles=triangles, normals=normals)


# ----------------------------
# ASCII STL
# ----------------------------

def _solid_name(name: Optional[str]) -> str:
    name = "_".join((name or "").split())
    return name or DEFAULTS["solid_name"]


def format_ascii_stl(mesh: Mesh, solid_name: Optional[str] = None) -> str:
    """Render the mesh as an ASCII STL document ('\\n' line endings)."""
    name = _solid_name(solid_name)
    print(f"[4/5] Formatting ASCII STL: {len(mesh):,} facets")

    lines = [f"solid {name}"]
    for (a, b, c), (nx, ny, nz) in zip(mesh.triangles.tolist(), mesh.normals.tolist()):
        lines.append(f"  facet normal {nx:.8e} {ny:.8e} {nz:.8e}")
        lines.append("    outer loop")
        lines.append(f"      vertex {a[0]:.8e} {a[1]:.8e} {a[2]:.8e}")
        lines.append(f"      vertex {b[0]:.8e} {b[1]:.8e} {b[2]:.8e}")
        lines.append(f"      vertex {c[0]:.8e} {c[1]:.8e} {c[2]:.8e}")
        lines.append("    endloop")
        lines.append("  endfacet")
    lines.append(f"endsolid {name}")
    return "\n".join(lines) + "\n"


# ----------------------------
# Conversion
# ----------------------------

@dataclass(frozen=True)
class ConversionResult:
    destination: Path
    triangles: int
    grid_shape: Tuple[int, int]  # after downsampling
    scale: ScaleProfile


def convert(
    source: Path,
    destination: Path,
    magnification_or_scale: Union[str, float] = DEFAULTS["magnification"],
    z_scale: float = DEFAULTS["z_scale"],
    downsample_stride: int = DEFAULTS["downsample"],
    instrument: str = DEFAULTS["instrument"],
    *,
    y_scale: Optional[float] = None,
    base_thickness: float = DEFAULTS["base_thickness"],
    solid_name: Optional[str] = None,
) -> ConversionResult:
    """
    Convert one CSV height grid into an ASCII STL solid at `destination`.

    Raises a ConversionError subclass on failure. Everything except the final
    write runs in memory, so nothing is written unless all stages succeed.
    An existing file at `destination` is overwritten. Two calls writing the
    same destination at the same time race; the last write wins.
    """
    source = Path(source)
    destination = Path(destination)

    print("\n" + "=" * 80)
    print(f"Converting: {source.name} -> {destination.name}")
    print("=" * 80)

    scale = resolve_scale_profile(
        magnification_or_scale,
        instrument,
        y_scale=y_scale,
        z_scale=z_scale,
    )
    grid = load_height_grid(source)
    grid, scale = downsample(grid, scale, downsample_stride)
    print(f"  Using scales: X={scale.x:g} mm, Y={scale.y:g} mm, Z={scale.z:g}")

    mesh = build_solid(grid, scale, base_thickness=base_thickness)
    text = format_ascii_stl(mesh, solid_name=solid_name)

    print(f"[5/5] Writing ASCII STL: {destination}")
    try:
        with destination.open("w", encoding="utf-8", newline="\n") as w:
            w.write(text)
    except OSError as e:
        raise WriteError(f"Cannot write {destination}: {e}") from e

    mins, maxs = mesh.bounds()
    print(f"  Bounds X: {mins[0]:.6g} .. {maxs[0]:.6g} mm")
    print(f"  Bounds Y: {mins[1]:.6g} .. {maxs[1]:.6g} mm")
    print(f"  Bounds Z: {mins[2]:.6g} .. {maxs[2]:.6g} mm")
    print(f"STL file saved to {destination} ({len(mesh):,} triangles)")

    return ConversionResult(
        destination=destination,
        triangles=len(mesh),
        grid_shape=(int(grid.shape[0]), int(grid.shape[1])),
        scale=scale,
    )


# ----------------------------
# Main CLI
# ----------------------------

def _print_magnifications(instrument: str) -> None:
    print(f"Pixel sizes for {instrument}:")
    for mag in magnifications(instrument):
        size_um = PIXEL_SIZES_UM[(instrument, mag)]
        print(f"  {mag:>6}  {size_um:g} um  ({size_um / 1000.0:g} mm)")


def _output_path(input_path: Path, output: Optional[Path], out_dir: Optional[Path]) -> Path:
    if output is not None:
        return output
    if out_dir is not None:
        return out_dir / f"{input_path.stem}.stl"
    return input_path.with_suffix(".stl")


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        description="Convert microscope height-profile CSV exports into watertight ASCII STL solids."
    )
    ap.add_argument(
        "inputs",
        nargs="*",
        type=Path,
        help="CSV file(s) with one row of comma-separated heights per scan line.",
    )
    ap.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Output STL path (single input only). Default: input path with .stl suffix.",
    )
    ap.add_argument(
        "--out-dir",
        type=Path,
        default=None,
        help="Write <input stem>.stl into this folder instead of next to each input.",
    )
    ap.add_argument(
        "--microscope",
        type=str,
        default=DEFAULTS["instrument"],
        choices=list(INSTRUMENTS),
        help=f"Microscope model used for magnification lookup (default: {DEFAULTS['instrument']}).",
    )
    ap.add_argument(
        "--magnification",
        type=str,
        default=DEFAULTS["magnification"],
        help="Magnification label like '500x', or a raw X scale in mm per pixel "
             f"(default: {DEFAULTS['magnification']}). Unknown labels fall back to 1.",
    )
    ap.add_argument(
        "--y-scale",
        type=float,
        default=None,
        help="Y scale in mm per pixel (default: same as the X scale).",
    )
    ap.add_argument(
        "--z-scale",
        type=float,
        default=DEFAULTS["z_scale"],
        help=f"Multiply heights by this factor (default: {DEFAULTS['z_scale']}).",
    )
    ap.add_argument(
        "--downsample",
        type=int,
        default=DEFAULTS["downsample"],
        help="Keep every Nth row and column (default: 1 = no downsample). "
             "X/Y scale are multiplied by N so the model keeps its size.",
    )
    ap.add_argument(
        "--base-thickness",
        type=float,
        default=DEFAULTS["base_thickness"],
        help="Distance of the flat bottom below the lowest sample, in height units "
             f"before Z scaling (default: {DEFAULTS['base_thickness']}).",
    )
    ap.add_argument(
        "--solid-name",
        type=str,
        default="",
        help=f"Name written into the STL 'solid' line (default: {DEFAULTS['solid_name']}).",
    )
    ap.add_argument(
        "--workers",
        type=int,
        default=DEFAULTS["workers"],
        help=f"Number of parallel workers when converting several files (default: {DEFAULTS['workers']}).",
    )
    ap.add_argument(
        "--list-magnifications",
        action="store_true",
        help="Print the magnification table for --microscope and exit.",
    )

    args = ap.parse_args(argv)

    if args.list_magnifications:
        _print_magnifications(args.microscope)
        return 0

    if not args.inputs:
        ap.error("No input CSV given.")
    if args.output is not None and len(args.inputs) > 1:
        ap.error("-o/--output can only be used with a single input; use --out-dir instead.")
    if args.output is not None and args.out_dir is not None:
        ap.error("Use only one of -o/--output or --out-dir.")

    if args.out_dir is not None:
        args.out_dir.mkdir(parents=True, exist_ok=True)

    tasks: List[Tuple[Path, Path]] = [
        (input_path, _output_path(input_path, args.output, args.out_dir))
        for input_path in args.inputs
    ]

    def _convert_task(task: Tuple[Path, Path]) -> ConversionResult:
        input_path, stl_path = task
        return convert(
            input_path,
            stl_path,
            args.magnification,
            args.z_scale,
            args.downsample,
            args.microscope,
            y_scale=args.y_scale,
            base_thickness=args.base_thickness,
            solid_name=args.solid_name.strip() or None,
        )

    failures = 0
    workers = max(1, int(args.workers))
    if workers == 1 or len(tasks) == 1:
        for task in tasks:
            try:
                _convert_task(task)
            except ConversionError as e:
                failures += 1
                print(f"ERROR converting {task[0]}: {e}")
        return 1 if failures else 0

    total = len(tasks)
    completed = 0
    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_map = {executor.submit(_convert_task, task): task for task in tasks}
        for future in as_completed(future_map):
            input_path = future_map[future][0]
            completed += 1
            try:
                future.result()
            except ConversionError as e:
                failures += 1
                print(f"ERROR converting {input_path}: {e}")
            print(f"[PROGRESS] {completed}/{total} {input_path.name}")

    if failures:
        print(f"[WARN] {failures} file(s) failed during conversion.")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())

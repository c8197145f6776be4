"""Linear quadtree addressing for tiles.

A tile (x, y) at a zoom level maps to a single integer ``idx`` by
interleaving the bits of its coordinates: bit ``i`` of ``x`` lands on bit
``2i`` of the index and bit ``i`` of ``y`` on bit ``2i + 1``. Indexes at one
zoom level therefore cover ``[0, 4**zoom)`` and neighbouring tiles stay
close together in idx order, which keeps range scans over an area cheap.
"""

from __future__ import annotations

from tilestore.exceptions import ValidationError


def max_index(zoom: int) -> int:
    """Exclusive upper bound of the index space at ``zoom``."""
    return 4**zoom


def is_int(value: object) -> bool:
    """True for ints, excluding bools."""
    return isinstance(value, int) and not isinstance(value, bool)


def xy_to_index(x: int, y: int, zoom: int) -> int:
    """Interleave tile coordinates into a quadtree index.

    Coordinates are not range-checked here; see ``tile_index``.
    """
    idx = 0
    for bit in range(zoom):
        idx |= ((x >> bit) & 1) << (2 * bit)
        idx |= ((y >> bit) & 1) << (2 * bit + 1)
    return idx


def index_to_xy(idx: int, zoom: int) -> tuple[int, int]:
    """Split a quadtree index back into tile coordinates."""
    x = y = 0
    for bit in range(zoom):
        x |= ((idx >> (2 * bit)) & 1) << bit
        y |= ((idx >> (2 * bit + 1)) & 1) << bit
    return x, y


def check_index(zoom: int, idx: int) -> None:
    """Validate a tile address.

    Raises:
        ValidationError: If zoom or idx is not an integer, zoom is negative,
            or idx lies outside ``[0, 4**zoom)``.
    """
    if not is_int(zoom) or zoom < 0:
        raise ValidationError(
            "Tile address must have a non-negative integer zoom",
            context={"zoom": zoom, "idx": idx},
        )
    if not is_int(idx):
        raise ValidationError(
            "Tile address must have an integer idx",
            context={"zoom": zoom, "idx": idx},
        )
    end = max_index(zoom)
    if idx < 0 or idx >= end:
        raise ValidationError(
            f"Tile address must satisfy 0 <= idx < {end}",
            context={"zoom": zoom, "idx": idx},
        )


def tile_index(x: int, y: int, zoom: int) -> int:
    """Compute and validate the index of tile (x, y) at ``zoom``.

    Raises:
        ValidationError: If the coordinates fall outside the zoom level's
            grid or the resulting index is out of range.
    """
    if not is_int(zoom) or zoom < 0:
        raise ValidationError(
            "Tile zoom must be a non-negative integer",
            context={"zoom": zoom, "x": x, "y": y},
        )
    size = 2**zoom
    for name, value in (("x", x), ("y", y)):
        if not is_int(value) or value < 0 or value >= size:
            raise ValidationError(
                f"Tile {name} must be an integer in [0, {size})",
                context={"zoom": zoom, "x": x, "y": y},
            )
    idx = xy_to_index(x, y, zoom)
    check_index(zoom, idx)
    return idx

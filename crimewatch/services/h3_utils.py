"""
H3 helpers used across the project.
"""

from typing import List, Set

try:
    import h3  # python-h3
except ImportError as e:
    raise RuntimeError("python-h3 is required. Install with: pip install h3") from e

# Resolution used to tag hotspot centroids (~175 m edge)
ZONE_RESOLUTION = 9


def point_to_hex(lat: float, lng: float, resolution: int = ZONE_RESOLUTION) -> str:
    """
    Return the H3 hex ID for (lat, lng) at the given resolution.
    Compatible with h3<4 and h3>=4.
    """
    try:  # h3 >= 4.x
        return h3.latlng_to_cell(lat, lng, resolution)
    except AttributeError:  # h3 < 4.x
        return h3.geo_to_h3(lat, lng, resolution)


def hex_disk(hex_id: str, rings: int) -> Set[str]:
    """All cells within `rings` grid steps of hex_id (the cell itself included)."""
    try:
        return set(h3.grid_disk(hex_id, rings))
    except AttributeError:
        return set(h3.k_ring(hex_id, rings))


def hex_boundary(hex_id: str) -> List[List[float]]:
    """
    Boundary vertices as [[lat, lng], ...] for map rendering.
    """
    try:
        verts = h3.cell_to_boundary(hex_id)
    except AttributeError:
        verts = h3.h3_to_geo_boundary(hex_id)
    return [[float(lat), float(lng)] for (lat, lng) in verts]

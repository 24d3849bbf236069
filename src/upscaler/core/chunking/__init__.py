"""Tiled representation of outputs too large for a single buffer."""

from ._tiling import Tile, TileGrid, TileRecipe, plan_tiles
from ._chunked_image import ChunkedImage, ChunkStats
from ._builder import CHUNK_STRATEGIES, ChunkedImageBuilder

__all__ = [
    "CHUNK_STRATEGIES",
    "ChunkStats",
    "ChunkedImage",
    "ChunkedImageBuilder",
    "Tile",
    "TileGrid",
    "TileRecipe",
    "plan_tiles",
]
